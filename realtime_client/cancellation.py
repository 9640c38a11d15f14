"""
Per-attempt cancellation tokens.

Every negotiation attempt gets a token stamped with a monotonically
increasing generation id. A newer attempt or an explicit stop() cancels the
older token; the attempt checks it after each suspension point.
"""
from __future__ import annotations

import itertools
from typing import Optional

from voice_errors import NegotiationCancelled


class CancellationToken:
    """Cancellation flag for one negotiation attempt."""

    def __init__(self, generation: int):
        self.generation = generation
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise NegotiationCancelled(self.generation)

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self._cancelled else "live"
        return f"CancellationToken(generation={self.generation}, {state})"


class GenerationCounter:
    """Issues tokens and remembers the newest one."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.current: Optional[CancellationToken] = None

    def next_token(self) -> CancellationToken:
        """Cancel the current token (if any) and issue a newer one."""
        if self.current is not None:
            self.current.cancel("superseded")
        self.current = CancellationToken(next(self._ids))
        return self.current

    def cancel_current(self, reason: str = "stopped") -> None:
        if self.current is not None:
            self.current.cancel(reason)

    def is_current(self, token: CancellationToken) -> bool:
        return self.current is token and not token.cancelled
