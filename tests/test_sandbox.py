import pytest

from services.errors import SandboxDisposed
from services.global_guard import overridden_globals
from services.sandbox import SANDBOX_GLOBALS, SandboxEnvironment


def test_exposes_browser_globals(runtime):
    sandbox = SandboxEnvironment.create(runtime, url="https://www.youtube.com/watch?v=abc", user_agent="TestAgent/1.0")

    assert set(sandbox.globals) == set(SANDBOX_GLOBALS)
    with overridden_globals(runtime, sandbox.globals):
        assert runtime.eval("location.hostname") == "www.youtube.com"
        assert runtime.eval("location.search") == "?v=abc"
        assert runtime.eval("origin") == "https://www.youtube.com"
        assert runtime.eval("navigator.userAgent") == "TestAgent/1.0"
        assert runtime.eval("window.document === document") is True
        assert runtime.eval("document.defaultView === window") is True
        assert runtime.eval("document.createElement('div').tagName") == "DIV"
        assert runtime.eval("typeof setTimeout") == "function"

    sandbox.dispose()


def test_sandboxes_are_independent(runtime):
    first = SandboxEnvironment.create(runtime, user_agent="First")
    second = SandboxEnvironment.create(runtime, user_agent="Second")

    first.dispose()

    with overridden_globals(runtime, second.globals):
        assert runtime.eval("navigator.userAgent") == "Second"
    second.dispose()


def test_dispose_is_idempotent(runtime):
    sandbox = SandboxEnvironment.create(runtime)
    assert sandbox.alive

    sandbox.dispose()
    sandbox.dispose()

    assert not sandbox.alive
    with pytest.raises(SandboxDisposed):
        sandbox.globals


def test_dispose_releases_the_object_graph(runtime):
    sandbox = SandboxEnvironment.create(runtime)
    window_expr = sandbox.globals["window"].expr
    handle_id = int(window_expr.split("(")[1].split(")")[0])

    sandbox.dispose()

    assert runtime.has_handle(handle_id) is False


def test_timers_run_from_the_host_queue(runtime, caplog):
    sandbox = SandboxEnvironment.create(runtime)

    with overridden_globals(runtime, sandbox.globals):
        runtime.exec(
            """
            globalThis.fired = [];
            setTimeout((tag) => fired.push(tag), 0, 'zero');
            clearTimeout(setTimeout(() => fired.push('cleared'), 0));
            setTimeout(() => { throw new Error('tick failed'); }, 0);
            setTimeout(() => fired.push('later'), 60000);
            """
        )
        assert runtime.eval("fired.length") == 0

        runtime.run_timers()

    assert runtime.eval("fired.join(',')") == "zero"
    assert "tick failed" in caplog.text
    sandbox.dispose()


def test_engine_timers_are_left_alone(runtime):
    before = {name: runtime.describe_global(name) for name in ("setTimeout", "clearTimeout")}
    runtime.exec("const engineTimers = [globalThis.setTimeout, globalThis.clearTimeout];")
    sandbox = SandboxEnvironment.create(runtime)

    with overridden_globals(runtime, sandbox.globals):
        assert runtime.eval("setTimeout === engineTimers[0]") is False

    assert {name: runtime.describe_global(name) for name in before} == before
    assert runtime.eval("setTimeout === engineTimers[0] && clearTimeout === engineTimers[1]") is True
    sandbox.dispose()
