"""
Publish/subscribe bus between the conversation core and its consumers.

Transport internals publish; renderers, loggers and the terminal client
subscribe per stream kind. Handlers run synchronously on the event loop.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List

from logging_setup import get_logger, Component


logger = get_logger(Component.REALTIME_CLIENT)

Handler = Callable[[Any], None]


class StreamKind(str, Enum):
    """Kinds of published streams."""

    STATE = "state"                      # StateChange
    LOCAL_LEVEL = "local_level"          # LevelSample from the microphone
    REMOTE_LEVEL = "remote_level"        # LevelSample from provider audio
    SIGNALING_EVENT = "signaling_event"  # dict decoded from the data channel
    TRANSPORT_ERROR = "transport_error"  # TransportError


class EventBus:
    """Per-kind subscriber registry."""

    def __init__(self):
        self._handlers: Dict[StreamKind, List[Handler]] = {kind: [] for kind in StreamKind}

    def subscribe(self, kind: StreamKind, handler: Handler) -> Callable[[], None]:
        """Register `handler`; returns a function that unsubscribes it."""
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(kind, handler)

        return unsubscribe

    def unsubscribe(self, kind: StreamKind, handler: Handler) -> None:
        try:
            self._handlers[kind].remove(handler)
        except ValueError:
            pass

    def publish(self, kind: StreamKind, payload: Any) -> None:
        for handler in list(self._handlers[kind]):
            try:
                handler(payload)
            except Exception as e:
                # A broken consumer must not take the conversation down
                logger.warning(
                    "Subscriber raised",
                    stream=kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def subscriber_count(self, kind: StreamKind) -> int:
        return len(self._handlers[kind])
