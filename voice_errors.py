"""
Error taxonomy for realtime voice sessions.

Every error raised while starting a conversation maps to one of:
- MediaAccessError: capture permission denied or device unavailable
- CredentialError: backend misconfiguration, network failure, non-success credential response
- NegotiationError: malformed or rejected offer/answer exchange
- TransportError: unexpected loss of an established session

classify_error() maps errors to stable categories; user_message() gives the
short text a presentation layer shows next to its retry action.
"""
from typing import Optional


class VoiceSessionError(Exception):
    """Base class for session errors surfaced to the conversation."""


class MediaAccessError(VoiceSessionError):
    """Local audio capture could not be acquired."""


class CredentialError(VoiceSessionError):
    """An ephemeral credential could not be obtained."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class NegotiationError(VoiceSessionError):
    """The SDP offer/answer exchange failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class TransportError(VoiceSessionError):
    """An established transport was lost."""

    def __init__(self, message: str, connection_state: Optional[str] = None):
        super().__init__(message)
        self.connection_state = connection_state


class NegotiationCancelled(Exception):
    """A negotiation attempt was superseded by a newer one or by stop()."""

    def __init__(self, generation: int):
        super().__init__(f"Negotiation generation {generation} cancelled")
        self.generation = generation


class ErrorCategory:
    """Stable error categories."""

    MEDIA_ACCESS_DENIED = "media.access_denied"
    CREDENTIAL_UNCONFIGURED = "credential.unconfigured"
    CREDENTIAL_REJECTED = "credential.rejected"
    CREDENTIAL_NETWORK_ERROR = "credential.network_error"
    NEGOTIATION_REJECTED = "negotiation.rejected"
    NEGOTIATION_NETWORK_ERROR = "negotiation.network_error"
    NEGOTIATION_MALFORMED_ANSWER = "negotiation.malformed_answer"
    TRANSPORT_LOST = "transport.lost"
    UNKNOWN_ERROR = "unknown_error"


def classify_error(error: BaseException) -> str:
    """Classify an error into a stable category string."""
    if isinstance(error, MediaAccessError):
        return ErrorCategory.MEDIA_ACCESS_DENIED

    if isinstance(error, CredentialError):
        if error.status_code is None:
            return ErrorCategory.CREDENTIAL_NETWORK_ERROR
        text = (error.response_text or "").lower()
        if error.status_code == 500 and "missing" in text and "configuration" in text:
            return ErrorCategory.CREDENTIAL_UNCONFIGURED
        return ErrorCategory.CREDENTIAL_REJECTED

    if isinstance(error, NegotiationError):
        if error.status_code is None and error.response_text is None:
            return ErrorCategory.NEGOTIATION_NETWORK_ERROR
        if error.status_code is not None and not 200 <= error.status_code < 300:
            return ErrorCategory.NEGOTIATION_REJECTED
        return ErrorCategory.NEGOTIATION_MALFORMED_ANSWER

    if isinstance(error, TransportError):
        return ErrorCategory.TRANSPORT_LOST

    return ErrorCategory.UNKNOWN_ERROR


def user_message(category: str) -> str:
    """Short user-facing message for a category."""
    messages = {
        ErrorCategory.MEDIA_ACCESS_DENIED: "Microphone access is needed to start a conversation.",
        ErrorCategory.CREDENTIAL_UNCONFIGURED: "The voice service is not configured.",
        ErrorCategory.CREDENTIAL_REJECTED: "The voice service refused the session. Try again.",
        ErrorCategory.CREDENTIAL_NETWORK_ERROR: "Could not reach the voice service. Check your connection.",
        ErrorCategory.NEGOTIATION_REJECTED: "The speech provider rejected the connection. Try again.",
        ErrorCategory.NEGOTIATION_NETWORK_ERROR: "Could not reach the speech provider. Check your connection.",
        ErrorCategory.NEGOTIATION_MALFORMED_ANSWER: "The speech provider sent an invalid answer. Try again.",
        ErrorCategory.TRANSPORT_LOST: "The conversation was disconnected.",
    }
    return messages.get(category, "Something went wrong. Try again.")
