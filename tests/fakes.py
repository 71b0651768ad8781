import base64
import json
from collections import Counter

import httpx


INTEGRITY_TOKEN = base64.urlsafe_b64encode(b"integrity-token-for-tests-0123456789").decode()

# Stands in for the BotGuard interpreter: registers a VM global, refuses to run
# without browser globals, and hands out a deterministic mint callback.
FAKE_INTERPRETER_JS = r"""
globalThis.FakeBotGuard = {
  a(program, onReady, flag, unused, noop, pair) {
    if (typeof document === 'undefined' || typeof navigator === 'undefined') {
      throw new Error('browser globals missing');
    }
    const seed = program + '|' + document.location.hostname;
    const asyncSnapshot = (done, args) => {
      const webPoSignalOutput = args[2];
      webPoSignalOutput.push((integrityToken) => {
        const key = Array.from(integrityToken);
        return (identifier) => {
          if (typeof window === 'undefined') throw new Error('minted outside the sandbox');
          const out = new Uint8Array(48);
          for (let i = 0; i < out.length; i++) {
            out[i] = (key[i % key.length] * 31 + identifier[i % identifier.length] * 7 + i * 13 + identifier.length) & 0xff;
          }
          return out;
        };
      });
      setTimeout(() => done('snapshot:' + seed), 0);
    };
    onReady(asyncSnapshot, noop, noop, noop);
    return [Promise.resolve(() => 'sync-snapshot')];
  },
};
"""


def scramble(payload) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return base64.b64encode(bytes((b - 97) % 256 for b in raw)).decode("ascii")


def challenge_fields(script=FAKE_INTERPRETER_JS, program="program-blob", global_name="FakeBotGuard"):
    return ["msg-1", [None, script], None, "hash-1", program, global_name, None, "experiments"]


class FakeWaa:
    """In-process stand-in for the Create / GenerateIT endpoints."""

    def __init__(self):
        self.calls = Counter()
        self.requests: list[httpx.Request] = []
        self.challenge = challenge_fields()
        self.create_status = 200
        self.integrity = [INTEGRITY_TOKEN, 43200, 39600, "fallback-token"]
        self.generate_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.calls[endpoint] += 1
        self.requests.append(request)
        if endpoint == "Create":
            return httpx.Response(self.create_status, json=["ignored", scramble(self.challenge)])
        if endpoint == "GenerateIT":
            return httpx.Response(self.generate_status, json=self.integrity)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
