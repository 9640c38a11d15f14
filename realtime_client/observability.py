"""
Realtime Client observability.

Subscribes to the conversation bus and emits structured events:
- conversation.state_changed / conversation.error
- signaling.event_received (event type only, never payload content)
- transport.lost
"""

from __future__ import annotations

from typing import Any, Callable, List, Optional

from observability.events import Component as ObsComponent, EventEmitter, Severity
from voice_errors import TransportError, classify_error
from .pubsub import EventBus, StreamKind


class ConversationObserver:
    """Bridges bus traffic to structured events for one conversation."""

    def __init__(self, bus: EventBus, conversation_id: str, emitter: Optional[EventEmitter] = None):
        self.conversation_id = conversation_id
        self.emitter = emitter or EventEmitter(ObsComponent.REALTIME_CLIENT)
        self._bus = bus
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self) -> "ConversationObserver":
        self._unsubscribers = [
            self._bus.subscribe(StreamKind.STATE, self._on_state),
            self._bus.subscribe(StreamKind.SIGNALING_EVENT, self._on_signaling_event),
            self._bus.subscribe(StreamKind.TRANSPORT_ERROR, self._on_transport_error),
        ]
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_state(self, change: Any) -> None:
        self.emitter.emit(
            "conversation.state_changed",
            self.conversation_id,
            from_state=change.previous.value,
            to_state=change.current.value,
            generation=change.generation,
        )
        if change.error:
            self.emitter.emit(
                "conversation.error",
                self.conversation_id,
                severity=Severity.ERROR,
                generation=change.generation,
                detail=change.error,
            )

    def _on_signaling_event(self, event: dict) -> None:
        self.emitter.emit(
            "signaling.event_received",
            self.conversation_id,
            severity=Severity.DEBUG,
            realtime_event_type=event.get("type"),
        )

    def _on_transport_error(self, error: TransportError) -> None:
        self.emitter.emit(
            "transport.lost",
            self.conversation_id,
            severity=Severity.WARN,
            category=classify_error(error),
            connection_state=error.connection_state,
        )
