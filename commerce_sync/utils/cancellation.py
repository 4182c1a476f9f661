"""
Cooperative cancellation for sync runs

The engine polls the token between batches; a batch that has started always
finishes.
"""
from typing import Optional


class CancellationToken:
    """Flag shared between the scheduler and a running batch loop"""

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason
