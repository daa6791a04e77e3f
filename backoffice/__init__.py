import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env")


from .config import get_config
from .extensions import db, migrate, mail
from .observability import init_logging, init_sentry, Metrics

def create_app(config_overrides=None):
    app = Flask(__name__)

    # Config: clean, explicit, class-based (instantiated so properties resolve)
    app.config.from_object(get_config()())
    if config_overrides:
        app.config.update(config_overrides)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    env_key = (os.getenv("APP_ENV", "development") or "development").lower()
    if env_key in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        _require("STRIPE_SECRET_KEY")
        # No signing secret means every delivery would be refused
        app.config["STRIPE_WEBHOOK_SECRET"] = _require("STRIPE_WEBHOOK_SECRET")
    elif not app.config.get("STRIPE_WEBHOOK_SECRET"):
        app.logger.warning("STRIPE_WEBHOOK_SECRET missing; /webhooks/stripe will reject every request")

    # --- Observability ---
    init_logging(app)
    init_sentry(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    mail.init_app(app)

    # Collaborators (looked up through app.extensions so tests can swap them)
    from .services.alerts import AlertSink
    from .services.notifications import TwilioSmsSender, MailBusinessNotifier
    app.extensions["metrics"] = Metrics()
    app.extensions["alerts"] = AlertSink.from_config(app.config)
    app.extensions["messaging"] = TwilioSmsSender.from_config(app.config)
    app.extensions["business_notifier"] = MailBusinessNotifier()

    # Webhooks
    from .blueprints.webhooks import bp as webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    # Health
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    # Error handlers (minimal, JSON only: there is no UI here)
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "code": 404}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "code": 405}), 405

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "internal_error", "code": 500}), 500

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    # The Stripe client is built per call from config (services/billing.py)
    if not app.config.get("STRIPE_SECRET_KEY"):
        app.logger.warning("Stripe secret key missing; subscription period ends will not be fetched")

    return app
