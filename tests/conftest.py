import pytest

from services.js_runtime import JsRuntime
from services.po_token import MinterCache
from tests.fakes import FakeClock, FakeWaa
from utils.visitor_data import encode_visitor_data


@pytest.fixture
def runtime() -> JsRuntime:
    return JsRuntime()


@pytest.fixture
def waa() -> FakeWaa:
    return FakeWaa()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(runtime, waa, clock):
    counter = iter(range(1, 1_000))
    cache = MinterCache(
        runtime_factory=lambda: runtime,
        http_client_factory=waa.client,
        clock=clock,
        visitor_data_factory=lambda: encode_visitor_data(f"Visitor{next(counter):04d}", 1_700_000_000),
    )
    yield cache
    cache.clear_cache()
