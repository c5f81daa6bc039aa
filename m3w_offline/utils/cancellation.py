"""
Cooperative cancellation.
Async helpers receive a token and check it after each await; the underlying
I/O is not interrupted, its result is just discarded.
"""
from typing import Optional


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled
