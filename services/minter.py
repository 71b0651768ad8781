"""
services/minter.py
Mint web-safe PO tokens bound to an identifier.

Once created, a minter is a local function living in the JS runtime:
identifier bytes in, token bytes out, no network. The same integrity token and
identifier always yield the same token.
"""

import logging

from services import config
from services.attestation import IntegrityTokenData
from services.errors import AttestationRejected, ExecutionFailed, SandboxDisposed
from services.executor import ChallengeResponse, release_challenge
from services.js_runtime import JsRuntime, JsRuntimeError
from utils.encoding import base64_to_bytes, bytes_to_websafe

logger = logging.getLogger(__name__)

_CREATE_JS = r"""
(function (webPoSignalOutput, integrityToken) {
  return __potHost.track(async () => {
    const getMinter = webPoSignalOutput[0];
    if (typeof getMinter !== 'function') throw new Error('webPoSignalOutput has no minter getter');
    const mintCallback = await getMinter(integrityToken);
    if (!(mintCallback instanceof Function)) throw new Error('minter getter did not return a function');
    return __potHost.put(mintCallback);
  });
})
"""

_MINT_JS = r"""
(function (callbackId, identifier) {
  const mintCallback = __potHost.get(callbackId);
  return __potHost.track(async () => {
    const result = await mintCallback(identifier);
    if (!result) throw new Error('mint callback returned nothing');
    if (!(result instanceof Uint8Array)) throw new Error('mint callback did not return a Uint8Array');
    return Array.from(result);
  });
})
"""


class TokenMinter:
    """Owns the mint callback and the challenge state it was created from."""

    def __init__(
        self,
        runtime: JsRuntime,
        callback_id: int,
        integrity: IntegrityTokenData,
        challenge: ChallengeResponse,
        timeout: float = config.EXECUTION_TIMEOUT_SECONDS,
    ):
        self._runtime = runtime
        self._callback_id = callback_id
        self._timeout = timeout
        self._closed = False
        self.integrity = integrity
        self.challenge = challenge

    @classmethod
    async def create(
        cls,
        runtime: JsRuntime,
        integrity: IntegrityTokenData,
        challenge: ChallengeResponse,
        timeout: float = config.EXECUTION_TIMEOUT_SECONDS,
    ) -> "TokenMinter":
        if not integrity.token:
            raise AttestationRejected("Integrity token is missing")
        try:
            token_bytes = base64_to_bytes(integrity.token)
        except ValueError as e:
            raise AttestationRejected("Integrity token is not base64") from e

        try:
            job_id = runtime.call(_CREATE_JS, challenge.signal_output, token_bytes, timeout=timeout)
            callback_id = await runtime.settle(job_id, timeout, stage="execution")
        except JsRuntimeError as e:
            raise ExecutionFailed(f"Failed to create minter: {e}") from e

        return cls(runtime, int(callback_id), integrity, challenge, timeout)

    async def mint(self, identifier: str) -> str:
        """Return a URL-safe base64 token bound to `identifier`."""
        if self._closed:
            raise SandboxDisposed("minter has been closed")
        try:
            job_id = self._runtime.call(
                _MINT_JS, self._callback_id, identifier.encode("utf-8"), timeout=self._timeout
            )
            result = await self._runtime.settle(job_id, self._timeout, stage="execution")
        except JsRuntimeError as e:
            raise ExecutionFailed(f"Failed to mint token: {e}") from e
        return bytes_to_websafe(bytes(result))

    def close(self) -> None:
        """Release the callback, the signal output and the VM global. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self._runtime.drop_handle(self._callback_id)
        except JsRuntimeError as e:
            logger.warning("[minter] Could not release mint callback: %s", e)
        release_challenge(self._runtime, self.challenge.vm_global, self.challenge.signal_id)
