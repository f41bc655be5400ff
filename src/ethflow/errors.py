"""
Exception types for the ethflow aggregation core.

Upstream hiccups are recovered locally wherever possible; these types are
what surfaces when recovery is not possible.
"""


class EthFlowError(Exception):
    """Base class for all ethflow errors."""


class UpstreamError(EthFlowError):
    """An upstream service was unreachable or returned an unusable response."""


class BackoffError(UpstreamError):
    """The request path failed everywhere recently and is in backoff."""

    def __init__(self, path: str):
        super().__init__(f"{path} recently failed; backing off")
        self.path = path


class AllCandidatesFailedError(UpstreamError):
    """Every candidate base failed (or the time budget ran out first)."""

    def __init__(self, path: str, attempts: int, total: int, last_error: Exception | None = None):
        if last_error is not None:
            message = f"all {total} candidates failed for {path} ({attempts} tried), last error: {last_error}"
        else:
            message = f"all {total} candidates failed or timed out for {path} ({attempts} tried)"
        super().__init__(message)
        self.path = path
        self.attempts = attempts
        self.total = total
        self.last_error = last_error


class RpcError(UpstreamError):
    """The execution-layer JSON-RPC call failed."""

    def __init__(self, method: str, message: str, code: int | None = None):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.code = code


class BlockFetchError(UpstreamError):
    """A block could not be fetched for analysis."""
