"""
services/executor.py
Run a challenge interpreter and take its snapshot.

The interpreter script is evaluated as a top-level script in the runtime's
real global scope, not inside the sandbox graph. Functions it creates must
pass `instanceof Function` checks against the native constructor, which only
holds when they come from the same realm. The sandbox graph reaches the script
only through the globals the guard has installed.

The script, the snapshot call and the wait for the snapshot are each bounded
by the execution timeout. A failed run releases what it left in the runtime (the VM
global and the signal-output handle); a successful one hands them to the minter.
"""

import json
import logging
from dataclasses import dataclass
from typing import Mapping

from services import config
from services.challenge import ChallengeDescriptor
from services.errors import ExecutionFailed
from services.js_runtime import JsRef, JsRuntime, JsRuntimeError

logger = logging.getLogger(__name__)

_SNAPSHOT_JS = r"""
(function (globalName, program) {
  const vm = globalThis[globalName];
  if (!vm) throw new Error(`VM not found in the global object: ${globalName}`);
  if (typeof vm.a !== 'function') throw new Error('VM init function not found');

  const webPoSignalOutput = [];
  const signalId = __potHost.put(webPoSignalOutput);

  let asyncSnapshot = null;
  const onVmReady = (asyncSnapshotFn) => { asyncSnapshot = asyncSnapshotFn; };

  const jobId = __potHost.track(async () => {
    await vm.a(program, onVmReady, true, undefined, () => {}, [[], []])[0];
    if (typeof asyncSnapshot !== 'function') throw new Error('Async snapshot function not found');
    return await new Promise((resolve) => {
      asyncSnapshot(resolve, [undefined, undefined, webPoSignalOutput, undefined]);
    });
  });
  return JSON.stringify([jobId, signalId]);
})
"""


@dataclass(frozen=True)
class ChallengeResponse:
    botguard_response: str
    signal_id: int     # handle of webPoSignalOutput, filled in by the program
    vm_global: str     # where the interpreter registered its VM

    @property
    def signal_output(self) -> JsRef:
        return JsRef.handle(self.signal_id)


def release_challenge(runtime: JsRuntime, vm_global: str, signal_id: int | None = None) -> None:
    """Drop the signal-output handle and the VM global a challenge run left behind."""
    try:
        if signal_id is not None:
            runtime.drop_handle(signal_id)
        if vm_global:
            runtime.release_global(vm_global)
    except JsRuntimeError as e:
        logger.warning("[executor] Could not release challenge state: %s", e)


class SandboxedExecutor:
    def __init__(self, runtime: JsRuntime, timeout: float = config.EXECUTION_TIMEOUT_SECONDS):
        self._runtime = runtime
        self._timeout = timeout

    async def execute(
        self,
        descriptor: ChallengeDescriptor,
        globals_in_scope: Mapping[str, JsRef],
    ) -> ChallengeResponse:
        missing = [name for name in globals_in_scope if not self._runtime.is_bound(name)]
        if missing:
            raise ExecutionFailed(f"Sandbox globals are not installed: {', '.join(missing)}")

        if not descriptor.interpreter_javascript:
            raise ExecutionFailed("Descriptor has no interpreter script")
        if not descriptor.program or not descriptor.global_name:
            raise ExecutionFailed("Descriptor is missing the program or global name")

        signal_id = None
        try:
            try:
                self._runtime.exec(descriptor.interpreter_javascript, timeout=self._timeout)
                job_id, signal_id = json.loads(
                    self._runtime.call(
                        _SNAPSHOT_JS, descriptor.global_name, descriptor.program, timeout=self._timeout
                    )
                )
                response = await self._runtime.settle(job_id, self._timeout, stage="execution")
            except JsRuntimeError as e:
                raise ExecutionFailed(f"Challenge execution failed: {e}") from e

            if not isinstance(response, str) or not response:
                raise ExecutionFailed("Challenge program produced no response")
        except BaseException:
            release_challenge(self._runtime, descriptor.global_name, signal_id)
            raise

        logger.debug("[executor] Snapshot taken (%d chars)", len(response))
        return ChallengeResponse(
            botguard_response=response,
            signal_id=signal_id,
            vm_global=descriptor.global_name,
        )
