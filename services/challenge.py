"""
services/challenge.py
Fetch a BotGuard challenge (interpreter script + program) for a session.

Design:
- One POST per challenge, bounded by the shared httpx timeout
- The payload usually arrives scrambled: base64, every byte shifted down by 97
- We never look inside the program; the executor only needs the interpreter
  script, the program blob and the global name the interpreter registers
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services import config
from services.errors import ChallengeUnavailable, StageTimeout
from utils.encoding import base64_to_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeDescriptor:
    message_id: Optional[str]
    interpreter_javascript: Optional[str]   # the executable interpreter payload
    interpreter_url: Optional[str]
    interpreter_hash: Optional[str]
    program: Optional[str]
    global_name: Optional[str]
    client_experiments_state_blob: Optional[str] = None


def descramble(scrambled: str) -> str:
    """Undo the challenge payload scrambling (base64, then +97 per byte)."""
    raw = base64_to_bytes(scrambled)
    return bytes((b + 97) % 256 for b in raw).decode("utf-8")


def parse_challenge_data(raw: Any) -> ChallengeDescriptor:
    """Turn the Create response into a descriptor. Raises ChallengeUnavailable."""
    if not isinstance(raw, list):
        raise ChallengeUnavailable("Challenge response is not a JSON array")

    challenge: list = []
    if len(raw) > 1 and isinstance(raw[1], str):
        try:
            challenge = json.loads(descramble(raw[1]) or "[]")
        except ValueError as e:
            raise ChallengeUnavailable(f"Could not descramble challenge: {e}") from e
    elif raw and isinstance(raw[0], list):
        challenge = raw[0]

    if not isinstance(challenge, list):
        raise ChallengeUnavailable("Challenge payload is not an array")

    # [messageId, wrappedScript, wrappedUrl, interpreterHash, program, globalName, _, experimentsBlob]
    fields = list(challenge) + [None] * max(0, 8 - len(challenge))
    message_id, wrapped_script, wrapped_url, interpreter_hash, program, global_name, _, blob = fields[:8]

    return ChallengeDescriptor(
        message_id=message_id,
        interpreter_javascript=_first_string(wrapped_script),
        interpreter_url=_first_string(wrapped_url),
        interpreter_hash=interpreter_hash,
        program=program,
        global_name=global_name,
        client_experiments_state_blob=blob,
    )


def _first_string(wrapped: Any) -> Optional[str]:
    if not isinstance(wrapped, list):
        return None
    return next((value for value in wrapped if value and isinstance(value, str)), None)


class ChallengeClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str = config.WAA_BASE_URL):
        self._http = http
        self._url = f"{base_url}/Create"

    async def request_challenge(
        self,
        visitor_id: str,
        request_key: str,
        interpreter_hash: Optional[str] = None,
    ) -> ChallengeDescriptor:
        payload = [request_key]
        if interpreter_hash:
            payload.append(interpreter_hash)

        headers = {**config.WAA_HEADERS, "x-goog-visitor-id": visitor_id}
        try:
            response = await self._http.post(self._url, headers=headers, content=json.dumps(payload))
        except httpx.TimeoutException as e:
            raise StageTimeout("challenge", config.HTTP_TIMEOUT_SECONDS) from e
        except httpx.HTTPError as e:
            raise ChallengeUnavailable(f"Challenge request failed: {e}") from e

        if not response.is_success:
            raise ChallengeUnavailable(f"Challenge request returned HTTP {response.status_code}")

        try:
            raw = response.json()
        except ValueError as e:
            raise ChallengeUnavailable("Challenge response is not JSON") from e

        descriptor = parse_challenge_data(raw)
        if not descriptor.interpreter_javascript:
            raise ChallengeUnavailable("Challenge did not include an interpreter script")

        logger.debug(
            "[challenge] Got challenge %s (global %s, hash %s)",
            descriptor.message_id, descriptor.global_name, descriptor.interpreter_hash,
        )
        return descriptor
