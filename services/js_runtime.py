"""
services/js_runtime.py
The embedded JavaScript engine that challenge code runs in.

Design:
- One V8 context (via mini-racer) per JsRuntime. Its global object is the
  "real" global scope: the challenge interpreter is evaluated there so that
  `instanceof Function` checks inside it see native constructors.
- The runtime is passed explicitly to the sandbox, guard, executor and minter.
  Nothing in Python touches module globals to make challenge code work.
- JS objects never cross into Python. They live in a private handle table
  inside the context and are referred to from Python with `JsRef`.
- Async JS work is tracked as a job in the same table and polled from asyncio.
  Sandbox timers live in a host queue that the poll loop drains.
- Every eval of untrusted code carries a timeout; V8 terminates a script that
  overruns it, so a runaway loop cannot freeze the event loop.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass

from py_mini_racer import JSEvalException, JSTimeoutException, MiniRacer

from services.errors import StageTimeout

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.01  # seconds between job polls

# Top-level `const` binds in the script scope, not as a property of
# globalThis, so the host table is invisible to challenge code enumerating globals.
_HOST_JS = r"""
const __potHost = (() => {
  const handles = new Map();
  const descriptors = new Map();
  const timers = new Map();
  let nextId = 1;

  const put = (value) => {
    const id = nextId++;
    handles.set(id, value);
    return id;
  };
  const get = (id) => {
    if (!handles.has(id)) throw new Error(`unknown handle ${id}`);
    return handles.get(id);
  };
  const message = (err) => String((err && err.message) || err);

  return {
    put,
    get,
    has: (id) => handles.has(id),
    drop: (id) => handles.delete(id),

    track(thunk) {
      const job = { done: false, ok: false, value: null, error: null };
      const id = put(job);
      Promise.resolve()
        .then(thunk)
        .then(
          (value) => {
            job.ok = true;
            job.value = value === undefined ? null : value;
            job.done = true;
          },
          (err) => {
            job.error = message(err);
            job.done = true;
          },
        );
      return id;
    },
    poll(id) {
      const job = get(id);
      if (!job.done) return '';
      handles.delete(id);
      return JSON.stringify({ ok: job.ok, value: job.value, error: job.error });
    },

    // Sandbox timers. Python fires due ones between polls, so a zero delay
    // never runs inside the eval that scheduled it.
    schedule(run, delay) {
      const id = nextId++;
      timers.set(id, { run, due: Date.now() + Math.max(0, Number(delay) || 0) });
      return id;
    },
    cancel: (id) => timers.delete(id),
    runDue() {
      const now = Date.now();
      const errors = [];
      for (const [id, timer] of [...timers]) {
        if (timer.due > now || !timers.delete(id)) continue;
        try {
          timer.run();
        } catch (err) {
          errors.push(message(err));
        }
      }
      return JSON.stringify(errors);
    },

    save(name) {
      const desc = Object.getOwnPropertyDescriptor(globalThis, name);
      if (desc === undefined) return 0;
      const slot = nextId++;
      descriptors.set(slot, desc);
      return slot;
    },
    define(name, value) {
      const desc = Object.getOwnPropertyDescriptor(globalThis, name);
      if (desc !== undefined && !desc.configurable) {
        // engine-owned bindings (native timers) only allow their value to change
        if (!desc.writable) throw new Error(`global ${name} is read-only and not configurable`);
        globalThis[name] = value;
        return;
      }
      Object.defineProperty(globalThis, name, { value, writable: true, configurable: true });
    },
    restore(name, slot) {
      if (slot === 0) {
        delete globalThis[name];
        return;
      }
      const desc = descriptors.get(slot);
      if (desc === undefined) throw new Error(`no saved descriptor for ${name}`);
      descriptors.delete(slot);
      Object.defineProperty(globalThis, name, desc);
    },
    release(name) {
      if (!Reflect.deleteProperty(globalThis, name)) globalThis[name] = undefined;
    },
    isBound: (name) => Object.prototype.hasOwnProperty.call(globalThis, name),
    describe(name) {
      const desc = Object.getOwnPropertyDescriptor(globalThis, name);
      if (desc === undefined) return JSON.stringify({ present: false });
      const accessor = 'get' in desc || 'set' in desc;
      return JSON.stringify({
        present: true,
        kind: accessor ? 'accessor' : 'data',
        writable: accessor ? null : desc.writable,
        enumerable: desc.enumerable,
        configurable: desc.configurable,
      });
    },
  };
})();
"""


class JsRuntimeError(Exception):
    """A script threw, or a tracked job rejected."""


@dataclass(frozen=True)
class JsRef:
    """A JavaScript expression that evaluates to a value held in the runtime."""
    expr: str

    @classmethod
    def handle(cls, handle_id: int, path: str = "") -> "JsRef":
        return cls(f"__potHost.get({handle_id}){path}")


class JsRuntime:
    """A single V8 context plus the host helpers the minting pipeline needs."""

    def __init__(self, context: MiniRacer | None = None):
        self._ctx = context or MiniRacer()
        self._ctx.eval(_HOST_JS)
        # names currently overridden by an active guard section
        self.active_overrides: set[str] = set()

    # ─── Evaluation ───────────────────────────────────────────────────────────

    def eval(self, source: str, timeout: float | None = None, stage: str = "execution"):
        """Evaluate `source`; with a timeout, a script still running after it is terminated."""
        try:
            if timeout is None:
                return self._ctx.eval(source)
            return self._ctx.eval(source, timeout_sec=timeout)
        except JSTimeoutException as e:
            raise StageTimeout(stage, timeout) from e
        except JSEvalException as e:
            raise JsRuntimeError(str(e)) from e

    def exec(self, source: str, timeout: float | None = None, stage: str = "execution") -> None:
        """Run a script for its side effects, discarding its completion value."""
        self.eval(f"{source}\n;void 0;", timeout=timeout, stage=stage)

    def call(self, fn_expr: str, *args, timeout: float | None = None, stage: str = "execution"):
        encoded = ", ".join(encode_arg(arg) for arg in args)
        return self.eval(f"({fn_expr})({encoded})", timeout=timeout, stage=stage)

    def run_timers(self, timeout: float | None = None, stage: str = "execution") -> None:
        """Fire sandbox timers that are due. A throwing callback is logged, as a browser would."""
        for error in json.loads(self.eval("__potHost.runDue()", timeout=timeout, stage=stage)):
            logger.warning("[js] Timer callback failed: %s", error)

    async def settle(self, job_id: int, timeout: float, stage: str):
        """Wait for a tracked job to finish and return its JSON-safe value."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = max(deadline - time.monotonic(), _POLL_INTERVAL)
            self.run_timers(timeout=remaining, stage=stage)
            raw = self.eval(f"__potHost.poll({job_id})")
            if raw:
                break
            if time.monotonic() >= deadline:
                self.eval(f"__potHost.drop({job_id})")
                raise StageTimeout(stage, timeout)
            await asyncio.sleep(_POLL_INTERVAL)

        result = json.loads(raw)
        if not result["ok"]:
            raise JsRuntimeError(result["error"])
        return result["value"]

    # ─── Handles ──────────────────────────────────────────────────────────────

    def has_handle(self, handle_id: int) -> bool:
        return bool(self.eval(f"__potHost.has({handle_id})"))

    def drop_handle(self, handle_id: int) -> bool:
        return bool(self.eval(f"__potHost.drop({handle_id})"))

    # ─── Global object ────────────────────────────────────────────────────────

    def save_global(self, name: str) -> int:
        """Stash the current descriptor of `name`; 0 means it was absent."""
        return int(self.call("__potHost.save", name))

    def define_global(self, name: str, value) -> None:
        self.call("__potHost.define", name, value)

    def restore_global(self, name: str, slot: int) -> None:
        self.call("__potHost.restore", name, slot)

    def release_global(self, name: str) -> None:
        """Remove a binding challenge code left behind (or blank it if it can't be deleted)."""
        self.call("__potHost.release", name)

    def is_bound(self, name: str) -> bool:
        return bool(self.call("__potHost.isBound", name))

    def describe_global(self, name: str) -> dict:
        return json.loads(self.call("__potHost.describe", name))


def encode_arg(value) -> str:
    if isinstance(value, JsRef):
        return value.expr
    if isinstance(value, (bytes, bytearray)):
        return f"new Uint8Array({json.dumps(list(value))})"
    return json.dumps(value)
