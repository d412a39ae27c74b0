"""
Error taxonomy for the analysis pipeline.

Transport and decoder failures are mapped onto these classes so the
orchestrator can decide between a fatal ``failed`` event and a partial
failure without knowing about httpx or pydantic.
"""


class AnalysisError(Exception):
    """Base class for every analysis pipeline error."""

    pass


class NetworkError(AnalysisError):
    """No usable response was received (connect failure, timeout, reset)."""

    pass


class ServerError(AnalysisError):
    """Backend answered with a non-2xx status and an error envelope."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidResponseError(AnalysisError):
    """A 2xx response that does not decode into the expected stage shape."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidImageError(AnalysisError):
    """The captured photo bytes could not be read as an image."""

    pass


class AnalysisCancelledError(AnalysisError):
    """Cooperative cancellation of a run. Never surfaced to the user."""

    pass


class QuotaExceededError(AnalysisError):
    """The free daily quota is used up."""

    def __init__(self, daily_limit: int):
        super().__init__(f"Free daily limit of {daily_limit} analyses reached")
        self.daily_limit = daily_limit
