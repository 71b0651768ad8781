import pytest

from services.attestation import IntegrityTokenData
from services.challenge import ChallengeDescriptor, parse_challenge_data
from services.errors import AttestationRejected, ExecutionFailed, SandboxDisposed, StageTimeout
from services.executor import ChallengeResponse, SandboxedExecutor
from services.global_guard import overridden_globals
from services.js_runtime import JsRef
from services.minter import TokenMinter
from services.sandbox import SandboxEnvironment
from utils.encoding import base64_to_bytes
from tests.fakes import INTEGRITY_TOKEN, challenge_fields

INTEGRITY = IntegrityTokenData(token=INTEGRITY_TOKEN, ttl_seconds=43200, refresh_threshold=39600)


def descriptor(**overrides) -> ChallengeDescriptor:
    return parse_challenge_data([challenge_fields(**overrides)])


@pytest.fixture
def sandbox(runtime):
    sandbox = SandboxEnvironment.create(runtime)
    yield sandbox
    sandbox.dispose()


@pytest.mark.asyncio
async def test_execute_produces_response_and_signal_output(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        response = await SandboxedExecutor(runtime).execute(descriptor(), sandbox.globals)

        assert response.botguard_response == "snapshot:program-blob|www.youtube.com"
        assert runtime.eval(f"{response.signal_output.expr}.length") == 1


@pytest.mark.asyncio
async def test_interpreter_lands_in_the_real_global_scope(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        await SandboxedExecutor(runtime).execute(descriptor(), sandbox.globals)

    assert runtime.eval("typeof globalThis.FakeBotGuard.a") == "function"


@pytest.mark.asyncio
async def test_execute_requires_installed_globals(runtime, sandbox):
    with pytest.raises(ExecutionFailed, match="not installed"):
        await SandboxedExecutor(runtime).execute(descriptor(), sandbox.globals)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"script": None},
        {"program": None},
        {"global_name": None},
    ],
)
async def test_malformed_descriptor(runtime, sandbox, overrides):
    with overridden_globals(runtime, sandbox.globals):
        with pytest.raises(ExecutionFailed):
            await SandboxedExecutor(runtime).execute(descriptor(**overrides), sandbox.globals)


@pytest.mark.asyncio
async def test_throwing_interpreter(runtime, sandbox):
    broken = descriptor(script="throw new Error('obfuscated failure');")

    with overridden_globals(runtime, sandbox.globals):
        with pytest.raises(ExecutionFailed, match="obfuscated failure"):
            await SandboxedExecutor(runtime).execute(broken, sandbox.globals)


@pytest.mark.asyncio
async def test_unknown_vm_global(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        with pytest.raises(ExecutionFailed, match="VM not found"):
            await SandboxedExecutor(runtime).execute(descriptor(global_name="NoSuchVm"), sandbox.globals)


@pytest.mark.asyncio
async def test_snapshot_that_never_answers_times_out(runtime, sandbox):
    silent = descriptor(
        script="globalThis.SilentVm = { a(program, onReady) { onReady(() => {}); return [null]; } };",
        global_name="SilentVm",
    )

    with overridden_globals(runtime, sandbox.globals):
        with pytest.raises(StageTimeout) as excinfo:
            await SandboxedExecutor(runtime, timeout=0.05).execute(silent, sandbox.globals)

    assert excinfo.value.stage == "execution"
    assert runtime.is_bound("SilentVm") is False


@pytest.mark.asyncio
async def test_runaway_interpreter_is_terminated(runtime, sandbox):
    runaway = descriptor(script="globalThis.FakeBotGuard = {}; while (true) {}")

    with overridden_globals(runtime, sandbox.globals):
        with pytest.raises(StageTimeout) as excinfo:
            await SandboxedExecutor(runtime, timeout=0.2).execute(runaway, sandbox.globals)

    assert excinfo.value.stage == "execution"
    assert runtime.is_bound("FakeBotGuard") is False
    assert runtime.eval("1 + 1") == 2


async def make_minter(runtime, sandbox) -> TokenMinter:
    response = await SandboxedExecutor(runtime).execute(descriptor(), sandbox.globals)
    return await TokenMinter.create(runtime, INTEGRITY, response)


def bare_challenge(runtime) -> ChallengeResponse:
    signal_id = runtime.call("__potHost.put", JsRef("[]"))
    return ChallengeResponse(botguard_response="snapshot", signal_id=signal_id, vm_global="")


@pytest.mark.asyncio
async def test_mint_is_deterministic_and_bound_to_identifier(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        minter = await make_minter(runtime, sandbox)
        first = await minter.mint("dQw4w9WgXcQ")
        again = await minter.mint("dQw4w9WgXcQ")
        other = await minter.mint("jNQXAC9IVRw")

    assert first == again
    assert first != other
    assert len(first) > 50
    assert len(base64_to_bytes(first)) == 48
    assert "+" not in first and "/" not in first


@pytest.mark.asyncio
async def test_mint_callback_sees_sandbox_globals_only_while_installed(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        minter = await make_minter(runtime, sandbox)

    with pytest.raises(ExecutionFailed, match="minted outside the sandbox"):
        await minter.mint("dQw4w9WgXcQ")


@pytest.mark.asyncio
async def test_minter_requires_a_getter(runtime, sandbox):
    with pytest.raises(ExecutionFailed, match="no minter getter"):
        await TokenMinter.create(runtime, INTEGRITY, bare_challenge(runtime))


@pytest.mark.asyncio
async def test_minter_requires_an_integrity_token(runtime):
    with pytest.raises(AttestationRejected):
        await TokenMinter.create(runtime, IntegrityTokenData("", 1, 1), bare_challenge(runtime))


@pytest.mark.asyncio
async def test_closed_minter_refuses_to_mint(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        minter = await make_minter(runtime, sandbox)
        minter.close()
        minter.close()

        with pytest.raises(SandboxDisposed):
            await minter.mint("dQw4w9WgXcQ")


@pytest.mark.asyncio
async def test_closing_the_minter_releases_challenge_state(runtime, sandbox):
    with overridden_globals(runtime, sandbox.globals):
        minter = await make_minter(runtime, sandbox)
    signal_id = minter.challenge.signal_id
    assert runtime.has_handle(signal_id)
    assert runtime.is_bound("FakeBotGuard")

    minter.close()

    assert runtime.has_handle(signal_id) is False
    assert runtime.is_bound("FakeBotGuard") is False
