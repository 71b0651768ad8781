"""
services/errors.py
Failures raised while building or using a PO-token minter.

Every error carries the pipeline `stage` it came from so the cache can log
where a build broke before degrading to "no token".
"""


class PoTokenError(Exception):
    stage = "po-token"


class ChallengeUnavailable(PoTokenError):
    """The challenge endpoint gave us nothing executable."""
    stage = "challenge"


class ExecutionFailed(PoTokenError):
    """The challenge interpreter could not be run to a response."""
    stage = "execution"


class AttestationRejected(PoTokenError):
    """The integrity-token exchange failed or returned garbage."""
    stage = "attestation"


class StageTimeout(PoTokenError):
    def __init__(self, stage: str, seconds: float):
        super().__init__(f"{stage} timed out after {seconds:g}s")
        self.stage = stage
        self.seconds = seconds


class SandboxDisposed(PoTokenError):
    """A minter was used after its sandbox was torn down."""
    stage = "sandbox"
