from __future__ import annotations


class BisectWebError(Exception):
    """Base for errors rendered as ``{"detail": ..., "suggestion": ...}``."""

    status_code = 500

    def __init__(self, message: str, *, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def as_payload(self) -> dict[str, str]:
        payload = {"detail": self.message}
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


# 400: input validation and preconditions.
class InvalidRequestError(BisectWebError):
    status_code = 400


class CommitNotFoundError(InvalidRequestError):
    pass


class SwappedEndpointsError(InvalidRequestError):
    pass


class UnrelatedCommitsError(InvalidRequestError):
    pass


class NoActiveSessionError(InvalidRequestError):
    pass


class RangeResolutionError(InvalidRequestError):
    pass


# 404
class RepositoryNotFoundError(BisectWebError):
    status_code = 404


class DevServerNotRunningError(BisectWebError):
    status_code = 404


# 409
class RepositoryBusyError(BisectWebError):
    status_code = 409


# 500: external tools and services.
class RepositorySetupError(BisectWebError):
    status_code = 500


class DevServerStartError(BisectWebError):
    status_code = 500


class LLMNotConfiguredError(BisectWebError):
    status_code = 500


class FixGenerationError(BisectWebError):
    status_code = 500


# 503
class DevServerUnreachableError(BisectWebError):
    status_code = 503
