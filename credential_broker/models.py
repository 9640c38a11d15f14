"""
Wire models for ephemeral credentials.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .config import DEFAULT_MODEL, DEFAULT_VOICE


class SessionRequest(BaseModel):
    """Body of POST /session."""
    model: str = Field(DEFAULT_MODEL, min_length=1)
    voice: str = Field(DEFAULT_VOICE, min_length=1)


@dataclass(frozen=True)
class CredentialLease:
    """
    Single-use, short-lived secret bound to one negotiation attempt.

    Expiry is enforced provider-side; the lease is never renewed.
    """

    value: str = field(repr=False)
    expires_at: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_provider_payload(cls, payload: Any) -> Optional["CredentialLease"]:
        """
        Extract the secret from a realtime session payload.

        Accepts {"client_secret": {"value": ...}}, {"client_secret": "..."}
        and {"value": "..."}. Returns None when no secret is present.
        """
        if not isinstance(payload, dict):
            return None

        secret = payload.get("client_secret")
        expires_at = None
        if isinstance(secret, dict):
            expires_at = secret.get("expires_at")
            secret = secret.get("value")
        if not secret:
            secret = payload.get("value")
        if not isinstance(secret, str) or not secret:
            return None

        return cls(
            value=secret,
            expires_at=expires_at if isinstance(expires_at, int) else None,
            raw=payload,
        )
