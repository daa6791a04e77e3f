from flask import request, jsonify

from . import bp
from backoffice.observability import CORRELATION_HEADER, get_correlation_id
from backoffice.services.dispatcher import handle_delivery


# ----- Stripe Webhook (billing + order payments) -----
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe -> /webhooks/stripe
    Signature is checked against the exact bytes Stripe sent, so the body is
    read raw and never re-serialized.
    """
    raw_bytes = request.get_data(cache=False, as_text=False) or b""
    sig_header = request.headers.get("Stripe-Signature")
    body, status = handle_delivery(raw_bytes, sig_header, request_id=request.headers.get(CORRELATION_HEADER))
    resp = jsonify(body)
    resp.headers[CORRELATION_HEADER] = get_correlation_id()
    return resp, status
