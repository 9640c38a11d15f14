"""
Realtime Client -> Credential Broker client.

Requests a fresh ephemeral credential from the backend for every negotiation
attempt. Leases are never cached or reused.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Tuple

import aiohttp

from credential_broker.models import CredentialLease
from logging_setup import get_logger, Component
from voice_errors import CredentialError


logger = get_logger(Component.REALTIME_CLIENT)


async def _post_json(url: str, payload: Dict[str, Any], timeout: float) -> Tuple[int, str]:
    """POST JSON; returns (status, body text)."""
    async with aiohttp.ClientSession() as s:
        async with s.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return resp.status, await resp.text()


def _error_text(body: str) -> str:
    """Backend errors arrive as {"error": "..."}; fall back to the raw body."""
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), str):
        return parsed["error"]
    return body


class CredentialClient:
    """Fetches ephemeral credentials from the Credential Broker backend."""

    def __init__(self, server_base_url: str, timeout_seconds: float = 10):
        self.endpoint = f"{server_base_url.rstrip('/')}/session"
        self._timeout = timeout_seconds

    async def request_ephemeral_credential(self, voice: str, model: str) -> CredentialLease:
        """
        Request a single-use credential for one negotiation.

        Raises:
            CredentialError: network failure, non-success status (message
                carries the backend/provider response text), or a response
                without a client secret.
        """
        start_ts = time.time()
        try:
            status, body = await _post_json(
                self.endpoint, {"model": model, "voice": voice}, self._timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Credential request failed",
                endpoint=self.endpoint,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise CredentialError(f"Failed to create session: {e}") from e

        latency_ms = int((time.time() - start_ts) * 1000)
        if not 200 <= status < 300:
            text = _error_text(body)
            logger.warning(
                "Credential request rejected",
                endpoint=self.endpoint,
                status=status,
                latency_ms=latency_ms,
            )
            raise CredentialError(
                f"Failed to create session: {text}",
                status_code=status,
                response_text=text,
            )

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            payload = None
        lease = CredentialLease.from_provider_payload(payload)
        if lease is None:
            raise CredentialError(
                "Invalid session response: missing client_secret",
                status_code=status,
                response_text=body,
            )

        logger.debug("Credential received", status=status, latency_ms=latency_ms)
        return lease
