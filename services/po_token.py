"""
services/po_token.py
Process-wide PO-token minter cache.

Architecture Decision:
- One minter per process, valid for 6 hours. Building one costs a challenge
  fetch, a JS execution and an integrity-token exchange (seconds); minting from
  it afterwards is local and fast.
- Lifecycle: Empty → Building → Ready → (Expired | Cleared) → Empty
- One asyncio.Lock serialises everything that touches the runtime's global
  object: builds, replacements and every content-token mint.
- Concurrent callers during a build share one build task instead of starting
  their own. The task is shielded, so a caller that gives up does not cancel
  it and the result is still cached for the next caller.
- Failures never escape get_token(): callers get None and carry on without
  attestation (at a higher risk of being blocked).
- In-memory only: cleared on restart.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from services import config
from services.attestation import AttestationClient
from services.challenge import ChallengeClient
from services.errors import PoTokenError, SandboxDisposed
from services.executor import SandboxedExecutor, release_challenge
from services.global_guard import SavedGlobals, overridden_globals, with_globals
from services.js_runtime import JsRuntime
from services.minter import TokenMinter
from services.sandbox import SandboxEnvironment
from utils.visitor_data import decode_visitor_data, generate_visitor_data

logger = logging.getLogger(__name__)


@dataclass
class CachedMinter:
    minter: TokenMinter
    session_token: str             # already bound to visitor_id
    visitor_id: str
    sandbox: SandboxEnvironment    # owned: disposed on replacement or clear
    saved_globals: SavedGlobals    # what the first injection replaced
    created_at: float = field(default_factory=time.time)

    @property
    def alive(self) -> bool:
        return self.sandbox.alive

    def dispose(self) -> None:
        self.minter.close()
        self.sandbox.dispose()


@dataclass(frozen=True)
class TokenCapability:
    """What callers get from get_token(): the session token and a way to mint more."""
    session_token: str
    visitor_id: str
    _entry: CachedMinter = field(repr=False, compare=False)
    _cache: "MinterCache" = field(repr=False, compare=False)

    async def mint_content_token(self, video_id: str) -> str:
        """Mint a token bound to `video_id` (or any other resource id)."""
        return await self._cache.mint_for(self._entry, video_id)


def _default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=config.HTTP_TIMEOUT_SECONDS,
        proxy=config.PROXY_URL,
        headers={"user-agent": config.USER_AGENT},
    )


def _log_visitor(visitor_data: str) -> None:
    try:
        visitor_id, issued_at = decode_visitor_data(visitor_data)
    except ValueError as e:
        logger.warning("[po-token] Visitor data does not decode: %s", e)
        return
    logger.debug("[po-token] New session for visitor %s (issued %d)", visitor_id, issued_at)


class MinterCache:
    """Owns at most one CachedMinter and the JS runtime it lives in."""

    def __init__(
        self,
        runtime_factory: Callable[[], JsRuntime] = JsRuntime,
        http_client_factory: Callable[[], httpx.AsyncClient] = _default_http_client,
        ttl_seconds: float = config.TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        request_key: str = config.REQUEST_KEY,
        visitor_data_factory: Callable[[], str] = generate_visitor_data,
        execution_timeout: float = config.EXECUTION_TIMEOUT_SECONDS,
    ):
        self._runtime_factory = runtime_factory
        self._http_client_factory = http_client_factory
        self._ttl = ttl_seconds
        self._clock = clock
        self._request_key = request_key
        self._visitor_data_factory = visitor_data_factory
        self._execution_timeout = execution_timeout

        self._runtime: Optional[JsRuntime] = None
        self._cached: Optional[CachedMinter] = None
        self._build_task: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()

        self._builds = 0
        self._failures = 0
        self._mints = 0

    # ─── Public API ───────────────────────────────────────────────────────────

    async def get_token(self) -> Optional[TokenCapability]:
        """Return a token capability, building a minter if needed; None on failure."""
        cached = self._cached
        if cached is not None and not self._is_expired(cached):
            logger.info("[po-token] Using cached token")
            return self._capability(cached)

        if self._build_task is None:
            self._build_task = asyncio.ensure_future(self._rebuild())
        return await asyncio.shield(self._build_task)

    def clear_cache(self) -> None:
        """Dispose the current minter, if any. Safe to call repeatedly."""
        if self._discard():
            logger.info("[po-token] Cache cleared")

    async def mint_for(self, entry: CachedMinter, identifier: str) -> str:
        """Mint a token bound to `identifier` with the sandbox globals re-installed."""
        async with self._lock:
            if not entry.alive:
                raise SandboxDisposed("PO-token minter was disposed before minting")
            token = await with_globals(
                self._runtime, entry.sandbox.globals, lambda: entry.minter.mint(identifier)
            )
            if not entry.alive:
                raise SandboxDisposed("PO-token cache was cleared while minting")
            self._mints += 1
            return token

    def stats(self) -> dict:
        """Return cache statistics (useful for debugging)."""
        cached = self._cached
        return {
            "cached": cached is not None,
            "age_seconds": round(self._clock() - cached.created_at, 1) if cached else None,
            "ttl_hours": self._ttl / 3600,
            "builds": self._builds,
            "failures": self._failures,
            "content_mints": self._mints,
            "injected_globals": cached.saved_globals.names if cached else [],
            "previously_absent": cached.saved_globals.absent if cached else [],
        }

    # ─── Build ────────────────────────────────────────────────────────────────

    def _discard(self) -> bool:
        cached, self._cached = self._cached, None
        if cached is None:
            return False
        cached.dispose()
        return True

    def _is_expired(self, cached: CachedMinter) -> bool:
        return self._clock() - cached.created_at >= self._ttl

    def _capability(self, cached: CachedMinter) -> TokenCapability:
        return TokenCapability(
            session_token=cached.session_token,
            visitor_id=cached.visitor_id,
            _entry=cached,
            _cache=self,
        )

    async def _rebuild(self) -> Optional[TokenCapability]:
        try:
            async with self._lock:
                # the stale minter goes before the new build starts
                if self._discard():
                    logger.info("[po-token] Minter expired, sandbox disposed")

                start = time.monotonic()
                try:
                    cached = await self._build()
                except PoTokenError as e:
                    self._failures += 1
                    logger.error("[po-token] Failed to generate token at %s stage: %s", e.stage, e)
                    return None
                except Exception:
                    self._failures += 1
                    logger.exception("[po-token] Failed to generate token")
                    return None

                self._cached = cached
                self._builds += 1
                elapsed_ms = (time.monotonic() - start) * 1000
                logger.info("[po-token] Token generated in %dms", elapsed_ms)
                return self._capability(cached)
        finally:
            self._build_task = None

    async def _build(self) -> CachedMinter:
        if self._runtime is None:
            self._runtime = self._runtime_factory()
        runtime = self._runtime

        visitor_id = self._visitor_data_factory()
        _log_visitor(visitor_id)
        sandbox = SandboxEnvironment.create(runtime)
        response = None
        minter = None
        try:
            async with self._http_client_factory() as http:
                descriptor = await ChallengeClient(http).request_challenge(visitor_id, self._request_key)

                with overridden_globals(runtime, sandbox.globals) as saved:
                    response = await SandboxedExecutor(runtime, self._execution_timeout).execute(
                        descriptor, sandbox.globals
                    )
                    integrity = await AttestationClient(http).exchange(response, self._request_key)
                    minter = await TokenMinter.create(
                        runtime, integrity, response, self._execution_timeout
                    )
                    session_token = await minter.mint(visitor_id)
        except BaseException:
            if minter is not None:
                minter.close()
            elif response is not None:
                release_challenge(runtime, response.vm_global, response.signal_id)
            sandbox.dispose()
            raise

        return CachedMinter(
            minter=minter,
            session_token=session_token,
            visitor_id=visitor_id,
            sandbox=sandbox,
            saved_globals=saved,
            created_at=self._clock(),
        )


# Singleton — import this everywhere
minter_cache = MinterCache()


async def get_token() -> Optional[TokenCapability]:
    return await minter_cache.get_token()


def clear_cache() -> None:
    minter_cache.clear_cache()
