"""
Structured JSON event emission (shared).

This module is shared by the Credential Broker and the Realtime Client.
It implements the event envelope and minimal taxonomy helpers.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    CREDENTIAL_BROKER = "credential_broker"
    REALTIME_CLIENT = "realtime_client"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventEmitter:
    """Emits structured JSON events."""

    def __init__(self, component: Component, stream=None):
        self.component = component
        self._stream = stream

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """
        Emit a structured JSON event.

        Args:
            event_type: Stable event type string (e.g., "conversation.state_changed")
            session_id: Opaque conversation or request identifier
            severity: Event severity level
            correlation_id: Optional correlation ID (defaults to session_id)
            **kwargs: Additional event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
        }
        event.update(kwargs)

        stream = self._stream or sys.stdout
        stream.write(json.dumps(event, ensure_ascii=False, default=str))
        stream.write("\n")
        stream.flush()

        event_store.store(event)
