import json
import time
from typing import Callable, List, Optional, Tuple

from flask import current_app


class DeadlineExceeded(RuntimeError):
    """The delivery ran past its budget; handled like any other handler failure."""


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires = clock() + seconds
        self.seconds = seconds

    @property
    def remaining(self) -> float:
        return max(self._expires - self._clock(), 0.0)

    def check(self, stage: Optional[str] = None) -> None:
        if self._clock() >= self._expires:
            raise DeadlineExceeded(f"webhook deadline of {self.seconds:g}s exceeded" + (f" at {stage}" if stage else ""))


class PostCommitHooks:
    """
    Side effects that run only after the state transaction committed.

    Each hook gets its own error boundary: a failing SMS never affects the
    order, the ledger or the other hooks.
    """

    def __init__(self):
        self._hooks: List[Tuple[str, Callable[[], object]]] = []

    def add(self, name: str, fn: Callable[[], object]) -> None:
        self._hooks.append((name, fn))

    def __len__(self) -> int:
        return len(self._hooks)

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self._hooks]

    def run(self) -> List[str]:
        failed = []
        for name, fn in self._hooks:
            try:
                fn()
            except Exception as exc:
                failed.append(name)
                current_app.logger.warning(json.dumps({
                    "event": "stripe_webhook.post_commit_failed",
                    "hook": name,
                    "error": f"{type(exc).__name__}: {exc}",
                }))
        self._hooks.clear()
        return failed
