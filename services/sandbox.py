"""
services/sandbox.py
Simulated browser environment for the challenge interpreter.

The interpreter inspects document/window/navigator/location before it will
produce a response. We build just enough of that object graph inside the JS
runtime and hand out references to it; the guard decides when those
references become real globals.
"""

import logging
from urllib.parse import urlsplit, urlunsplit

from services import config
from services.errors import SandboxDisposed
from services.js_runtime import JsRef, JsRuntime, JsRuntimeError

logger = logging.getLogger(__name__)

# Names installed onto the global object while challenge code runs
SANDBOX_GLOBALS = (
    "window",
    "document",
    "location",
    "origin",
    "navigator",
    "setTimeout",
    "clearTimeout",
)

_BUILD_JS = r"""
(function (url, userAgent) {
  const noop = () => {};

  // Our own timers, never the engine's: they run from the host queue and
  // are cancelled with the sandbox.
  const timers = new Set();
  const setTimeout = (fn, delay, ...args) => {
    const id = __potHost.schedule(() => {
      timers.delete(id);
      if (typeof fn === 'function') fn(...args);
    }, delay);
    timers.add(id);
    return id;
  };
  const clearTimeout = (id) => {
    if (timers.delete(id)) __potHost.cancel(id);
  };

  const location = {
    href: url.href,
    origin: url.origin,
    protocol: url.protocol,
    host: url.host,
    hostname: url.hostname,
    port: url.port,
    pathname: url.pathname,
    search: url.search,
    hash: url.hash,
    assign: noop,
    reload: noop,
    replace: noop,
    toString() { return this.href; },
  };

  const makeElement = (tagName) => ({
    tagName: String(tagName).toUpperCase(),
    style: {},
    childNodes: [],
    attributes: {},
    setAttribute(name, value) { this.attributes[name] = String(value); },
    getAttribute(name) { return name in this.attributes ? this.attributes[name] : null; },
    appendChild(child) { this.childNodes.push(child); return child; },
    removeChild(child) { this.childNodes = this.childNodes.filter((c) => c !== child); return child; },
    addEventListener: noop,
    removeEventListener: noop,
    getContext: () => null,
  });

  const documentElement = makeElement('html');
  const head = makeElement('head');
  const body = makeElement('body');
  documentElement.appendChild(head);
  documentElement.appendChild(body);

  const document = {
    URL: url.href,
    documentURI: url.href,
    domain: url.hostname,
    referrer: '',
    cookie: '',
    readyState: 'complete',
    visibilityState: 'visible',
    hidden: false,
    location,
    documentElement,
    head,
    body,
    createElement: makeElement,
    createElementNS: (ns, tagName) => makeElement(tagName),
    createTextNode: (text) => ({ nodeType: 3, textContent: String(text) }),
    getElementById: () => null,
    getElementsByTagName: () => [],
    querySelector: () => null,
    querySelectorAll: () => [],
    addEventListener: noop,
    removeEventListener: noop,
  };

  const navigator = {
    userAgent,
    appName: 'Netscape',
    appVersion: userAgent.replace(/^Mozilla\//, ''),
    platform: 'Win32',
    vendor: 'Google Inc.',
    language: 'en-US',
    languages: ['en-US', 'en'],
    cookieEnabled: true,
    onLine: true,
    webdriver: false,
    hardwareConcurrency: 8,
    maxTouchPoints: 0,
    plugins: [],
    mimeTypes: [],
  };

  const window = {
    document,
    location,
    navigator,
    origin: url.origin,
    setTimeout,
    clearTimeout,
    innerWidth: 1920,
    innerHeight: 1080,
    devicePixelRatio: 1,
    addEventListener: noop,
    removeEventListener: noop,
    dispatchEvent: () => true,
  };
  window.window = window;
  window.self = window;
  window.top = window;
  window.parent = window;
  document.defaultView = window;

  return __potHost.put({ window, timers });
})
"""

_CLOSE_JS = r"""
(function (id) {
  if (!__potHost.has(id)) return false;
  const box = __potHost.get(id);
  __potHost.drop(id);
  for (const timerId of box.timers) __potHost.cancel(timerId);
  box.timers.clear();
  // break the window <-> document cycle so nothing keeps the graph alive
  box.window.document.defaultView = null;
  for (const key of Object.keys(box.window)) delete box.window[key];
  return true;
})
"""


class SandboxEnvironment:
    def __init__(self, runtime: JsRuntime, handle_id: int):
        self._runtime = runtime
        self._handle_id = handle_id
        self._disposed = False

    @classmethod
    def create(
        cls,
        runtime: JsRuntime,
        url: str = config.SANDBOX_URL,
        user_agent: str = config.USER_AGENT,
    ) -> "SandboxEnvironment":
        handle_id = int(runtime.call(_BUILD_JS, _location_parts(url), user_agent))
        logger.debug("[sandbox] Created environment #%d for %s", handle_id, url)
        return cls(runtime, handle_id)

    @property
    def alive(self) -> bool:
        return not self._disposed

    @property
    def globals(self) -> dict[str, JsRef]:
        """Global name → reference into this sandbox's object graph."""
        if self._disposed:
            raise SandboxDisposed(f"sandbox #{self._handle_id} has been disposed")
        window = JsRef.handle(self._handle_id, ".window")
        return {
            name: window if name == "window" else JsRef(f"{window.expr}.{name}")
            for name in SANDBOX_GLOBALS
        }

    def dispose(self) -> None:
        """Tear down the object graph. Safe to call any number of times."""
        if self._disposed:
            return
        self._disposed = True
        try:
            self._runtime.call(_CLOSE_JS, self._handle_id)
        except JsRuntimeError as e:
            logger.warning("[sandbox] Teardown of #%d failed: %s", self._handle_id, e)


def _location_parts(url: str) -> dict:
    """Split a URL the way window.location exposes it (bare V8 has no URL class)."""
    parts = urlsplit(url)
    path = parts.path or "/"
    origin = f"{parts.scheme}://{parts.netloc}"
    return {
        "href": urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment)),
        "origin": origin,
        "protocol": f"{parts.scheme}:",
        "host": parts.netloc,
        "hostname": parts.hostname or "",
        "port": str(parts.port) if parts.port else "",
        "pathname": path,
        "search": f"?{parts.query}" if parts.query else "",
        "hash": f"#{parts.fragment}" if parts.fragment else "",
    }
