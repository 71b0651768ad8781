"""
services/attestation.py
Exchange a challenge response for an integrity token.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from services import config
from services.errors import AttestationRejected, StageTimeout
from services.executor import ChallengeResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntegrityTokenData:
    token: str
    ttl_seconds: int
    refresh_threshold: int
    fallback_token: Optional[str] = None


class AttestationClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str = config.WAA_BASE_URL):
        self._http = http
        self._url = f"{base_url}/GenerateIT"

    async def exchange(self, challenge_response: ChallengeResponse, request_key: str) -> IntegrityTokenData:
        """POST [request_key, response] and parse the [token, ttl, threshold, fallback] reply."""
        payload = [request_key, challenge_response.botguard_response]
        try:
            response = await self._http.post(self._url, headers=config.WAA_HEADERS, content=json.dumps(payload))
        except httpx.TimeoutException as e:
            raise StageTimeout("attestation", config.HTTP_TIMEOUT_SECONDS) from e
        except httpx.HTTPError as e:
            raise AttestationRejected(f"Integrity token request failed: {e}") from e

        if not response.is_success:
            raise AttestationRejected(f"Integrity token request returned HTTP {response.status_code}")

        try:
            raw = response.json()
        except ValueError as e:
            raise AttestationRejected("Integrity token response is not JSON") from e

        data = _parse_integrity_tuple(raw)
        logger.debug("[attestation] Integrity token valid for ~%ds", data.ttl_seconds)
        return data


def _parse_integrity_tuple(raw) -> IntegrityTokenData:
    if not isinstance(raw, list) or len(raw) < 4:
        raise AttestationRejected(f"Expected a 4-item array, got: {str(raw)[:80]}")

    token, ttl_seconds, refresh_threshold, fallback_token = raw[:4]
    if not isinstance(token, str) or not token:
        raise AttestationRejected("Integrity token is missing")
    for value in (ttl_seconds, refresh_threshold):
        if not isinstance(value, int) or isinstance(value, bool):
            raise AttestationRejected(f"Integrity token lifetime is not an integer: {value!r}")
    if fallback_token is not None and not isinstance(fallback_token, str):
        raise AttestationRejected("Fallback token is not a string")

    return IntegrityTokenData(
        token=token,
        ttl_seconds=ttl_seconds,
        refresh_threshold=refresh_threshold,
        fallback_token=fallback_token,
    )
