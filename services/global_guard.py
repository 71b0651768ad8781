"""
services/global_guard.py
Temporarily install sandbox globals onto the runtime's real global object.

Architecture Decision:
- Prior bindings are saved as property descriptors inside the JS engine, so
  accessor properties (getter-only `navigator`, for example) come back with the
  very same getter/setter functions. "Absent" is its own state: those names
  are deleted on restore, not set to undefined.
- Restoration runs on every exit path: return, exception, cancellation.
- Non-configurable engine bindings are never redefined, only reassigned.
- The guard is NOT reentrant and does not queue callers. Two overlapping
  sections on one runtime would restore each other's bindings; callers
  (the minter cache) serialise access.
"""

import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from services.js_runtime import JsRuntime

logger = logging.getLogger(__name__)

ABSENT = 0  # slot id meaning "no own property before injection"


@dataclass
class SavedGlobals:
    """What one injection replaced: name → saved descriptor slot (or ABSENT)."""
    slots: dict[str, int] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return list(self.slots)

    @property
    def absent(self) -> list[str]:
        return [name for name, slot in self.slots.items() if slot == ABSENT]


def install_globals(runtime: JsRuntime, values: Mapping[str, Any]) -> SavedGlobals:
    """
    Overwrite each name with a writable, configurable binding, remembering the old one.

    Bindings the engine created non-configurable (its native timers) keep their
    descriptor and only have the value swapped. A read-only one cannot be
    overridden and fails the install.
    """
    overlap = runtime.active_overrides.intersection(values)
    if overlap:
        logger.warning("[guard] Overlapping global override on %s", sorted(overlap))

    saved = SavedGlobals()
    try:
        for name, value in values.items():
            saved.slots[name] = runtime.save_global(name)
            runtime.define_global(name, value)
    except BaseException:
        restore_globals(runtime, saved)
        raise

    runtime.active_overrides.update(saved.slots)
    return saved


def restore_globals(runtime: JsRuntime, saved: SavedGlobals) -> None:
    """Put back exactly what install_globals replaced, last name first."""
    for name in reversed(saved.names):
        runtime.restore_global(name, saved.slots[name])
        runtime.active_overrides.discard(name)


@contextmanager
def overridden_globals(runtime: JsRuntime, values: Mapping[str, Any]):
    """Context-manager form of the guard; yields the SavedGlobals record."""
    saved = install_globals(runtime, values)
    try:
        yield saved
    finally:
        restore_globals(runtime, saved)


async def with_globals(
    runtime: JsRuntime,
    values: Mapping[str, Any],
    fn: Callable[[], Any],
):
    """Run `fn` with `values` installed as globals; always restore afterwards."""
    with overridden_globals(runtime, values):
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result
