"""Custom exceptions for the automation hub."""

from typing import Optional


class AutomationError(Exception):
    """Base exception for the automation hub."""

    error_code: str = "automation_error"

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Structured reason suitable for direct display."""
        return {"error_code": self.error_code, "detail": self.message}


class NotFoundError(AutomationError):
    """Unknown automation, plugin or execution id."""

    error_code = "not_found"

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ConfigValidationError(AutomationError):
    """One or more configuration fields failed validation."""

    error_code = "config_validation_failed"

    def __init__(
        self,
        errors: list[str],
        message: str = "Configuration is invalid",
        field_errors: Optional[dict[str, list[str]]] = None,
    ):
        """Initialize ConfigValidationError with 422 status code."""
        self.errors = list(errors)
        self.field_errors = dict(field_errors or {})
        super().__init__(f"{message}: {'; '.join(self.errors)}" if self.errors else message, 422)

    @property
    def invalid_fields(self) -> list[str]:
        return list(self.field_errors)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        data["field_errors"] = {k: list(v) for k, v in self.field_errors.items()}
        return data


class AlreadyRunningError(AutomationError):
    """An automation already has a non-terminal execution."""

    error_code = "already_running"

    def __init__(self, automation_id: str, execution_id: Optional[str] = None):
        """Initialize AlreadyRunningError with 409 status code."""
        self.automation_id = automation_id
        self.execution_id = execution_id
        super().__init__(
            f"Automation {automation_id} is already running (execution {execution_id})",
            409,
        )


class UnsupportedOperationError(AutomationError):
    """The plugin or the current state does not support the operation."""

    error_code = "unsupported_operation"

    def __init__(self, message: str = "Operation not supported"):
        """Initialize UnsupportedOperationError with 409 status code."""
        super().__init__(message, 409)


class PluginExecutionError(AutomationError):
    """The plugin reported a failure, raised, or returned a malformed result."""

    error_code = "plugin_error"

    def __init__(self, message: str = "Plugin execution failed"):
        """Initialize PluginExecutionError with 500 status code."""
        super().__init__(message, 500)


class PluginTimeoutError(AutomationError):
    """The plugin exceeded its deadline or ignored a stop request."""

    error_code = "timeout"

    def __init__(self, message: str = "Plugin execution timed out"):
        """Initialize PluginTimeoutError with 504 status code."""
        super().__init__(message, 504)


class InUseError(AutomationError):
    """Deletion or unregistration attempted while an execution is in flight."""

    error_code = "in_use"

    def __init__(self, message: str = "Resource is in use"):
        """Initialize InUseError with 409 status code."""
        super().__init__(message, 409)


class DuplicateTypeError(AutomationError):
    """A plugin for the automation type is already registered."""

    error_code = "duplicate_type"

    def __init__(self, automation_type: str):
        """Initialize DuplicateTypeError with 409 status code."""
        self.automation_type = automation_type
        super().__init__(f"A plugin for type '{automation_type}' is already registered", 409)


class ContextConstructionError(AutomationError):
    """The execution context could not be built (e.g. a secret is missing)."""

    error_code = "context_construction_failed"

    def __init__(self, message: str = "Execution context could not be built"):
        """Initialize ContextConstructionError with 424 status code."""
        super().__init__(message, 424)


class AlreadyExistsError(AutomationError):
    """An automation with the same id already exists."""

    error_code = "already_exists"

    def __init__(self, message: str = "Resource already exists"):
        """Initialize AlreadyExistsError with 409 status code."""
        super().__init__(message, 409)
