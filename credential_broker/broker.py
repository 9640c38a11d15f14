"""
Ephemeral credential minting.

The broker exchanges the long-lived provider key for a single-use realtime
session secret. It is stateless across calls; the only side effect is the
outbound request to the provider.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

import aiohttp

from logging_setup import get_logger, Component
from voice_errors import CredentialError
from .config import API_KEY_ENV, BrokerConfig
from .models import CredentialLease


logger = get_logger(Component.CREDENTIAL_BROKER)


async def _post_provider(
    url: str,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    timeout: float,
) -> Tuple[int, str]:
    """POST JSON to the provider; returns (status, body text)."""
    async with aiohttp.ClientSession() as s:
        async with s.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            return resp.status, await resp.text()


class CredentialBroker:
    """Mints ephemeral realtime credentials from the long-lived provider key."""

    def __init__(self, config: BrokerConfig):
        self._config = config

    @property
    def configured(self) -> bool:
        return bool(self._config.api_key)

    @property
    def sessions_url(self) -> str:
        return f"{self._config.provider_base_url}/realtime/sessions"

    async def request_ephemeral_credential(
        self,
        voice: Optional[str] = None,
        model: Optional[str] = None,
    ) -> CredentialLease:
        """
        Request a single-use session credential for `voice` on `model`.

        Raises:
            CredentialError: key unconfigured, network failure, or provider
                non-success (carrying the provider's status and raw text).
        """
        voice = voice or self._config.default_voice
        model = model or self._config.default_model

        if not self._config.api_key:
            logger.error("Credential request without provider key", env_var=API_KEY_ENV)
            raise CredentialError(
                f"Missing {API_KEY_ENV} configuration",
                status_code=500,
                response_text=f"Missing {API_KEY_ENV} configuration",
            )

        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        start_ts = time.time()
        logger.debug("Requesting realtime session", model=model, voice=voice)

        try:
            status, text = await _post_provider(
                self.sessions_url,
                headers,
                {"model": model, "voice": voice},
                self._config.provider_timeout_seconds,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Provider session request failed",
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise CredentialError(f"Provider request failed: {e}") from e

        latency_ms = int((time.time() - start_ts) * 1000)
        if not 200 <= status < 300:
            logger.warning(
                "Provider rejected session request",
                status=status,
                latency_ms=latency_ms,
            )
            raise CredentialError(
                f"Provider returned {status}: {text}",
                status_code=status,
                response_text=text,
            )

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise CredentialError(
                "Provider returned a non-JSON session payload",
                status_code=status,
                response_text=text,
            ) from e

        lease = CredentialLease.from_provider_payload(payload)
        if lease is None:
            raise CredentialError(
                "Provider session payload is missing client_secret",
                status_code=status,
                response_text=text,
            )

        logger.info(
            "Realtime session credential issued",
            model=model,
            voice=voice,
            expires_at=lease.expires_at,
            latency_ms=latency_ms,
        )
        return lease
