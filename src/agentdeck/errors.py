"""Exception taxonomy shared by the stores, the orchestrator and the HTTP layer."""


class AgentDeckError(Exception):
    """Base class for every error agentdeck raises on purpose."""

    status_code = 500
    code = "ERROR"


class NotFound(AgentDeckError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationError(AgentDeckError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AlreadyRunning(AgentDeckError):
    status_code = 409
    code = "ALREADY_RUNNING"


class Busy(AgentDeckError):
    status_code = 409
    code = "BUSY"


class ProviderUnavailable(AgentDeckError):
    status_code = 503
    code = "PROVIDER_UNAVAILABLE"


class Unauthenticated(AgentDeckError):
    status_code = 401
    code = "UNAUTHENTICATED"


class UnsupportedModel(AgentDeckError):
    status_code = 400
    code = "UNSUPPORTED_MODEL"


class ProviderRunError(AgentDeckError):
    """The provider process crashed or exited non-zero."""

    status_code = 502
    code = "PROVIDER_RUN_ERROR"

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class CorruptState(AgentDeckError):
    """The feature list on disk does not have the expected shape."""

    status_code = 500
    code = "CORRUPT_STATE"


class EmptyWriteRefused(AgentDeckError):
    """The write-time guard refused to replace the feature list with nothing."""

    status_code = 500
    code = "CRITICAL_EMPTY_WRITE_REFUSED"

    def __init__(self, path: str):
        super().__init__(f"CRITICAL: refusing empty write to {path}")
        self.path = path


class ToolRejected(AgentDeckError):
    """A tool call other than the sanctioned feature-status update."""

    status_code = 403
    code = "TOOL_REJECTED"
