"""Error taxonomy for the action pipeline."""


class GitMindError(Exception):
    """Base class for every per-request pipeline failure."""

    kind = "GitMindError"
    status_code = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, **self.details}


class StateViolation(GitMindError):
    """Raised when a session or task is asked to move to a state it cannot reach."""

    kind = "StateViolation"
    status_code = 409


class ActiveSessionExists(StateViolation):
    """Raised when a session is created while another one is active."""


class RateLimitExceeded(GitMindError):
    kind = "RateLimitExceeded"
    status_code = 429


class GeneratorUnavailable(GitMindError):
    """Raised on generator rate limits, exhausted quota and timeouts."""

    kind = "GeneratorUnavailable"
    status_code = 503


class GeneratorError(GitMindError):
    """Raised on any other non-success generator response."""

    kind = "GeneratorError"
    status_code = 502


class PatchValidationFailed(GitMindError):
    kind = "PatchValidationFailed"
    status_code = 422


class UpstreamHostError(GitMindError):
    """Raised when the source host rejects a request."""

    kind = "UpstreamHostError"

    _STATUS_BY_REASON = {"conflict": 409, "permission": 403, "not_found": 404}

    def __init__(self, message: str, reason: str = "upstream", **details):
        super().__init__(message, reason=reason, **details)
        self.reason = reason

    @property
    def status_code(self) -> int:
        return self._STATUS_BY_REASON.get(self.reason, 502)


class ConfigurationMissing(GitMindError):
    """Raised when a collaborator credential is not configured."""

    kind = "ConfigurationMissing"
    status_code = 503


class LimitReached(GitMindError):
    kind = "LimitReached"
    status_code = 409


class NotFound(GitMindError):
    kind = "NotFound"
    status_code = 404
