"""Error taxonomy for the orchestration core and its capability adapters."""

from __future__ import annotations


class OpsError(Exception):
    """Base error carrying a stable code and structured details."""

    code = "ops_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error with structured metadata."""
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class StoreError(OpsError):
    """Raised when the persistent store is unavailable or rejects an operation."""

    code = "store_error"


class PolicyError(OpsError):
    """Raised when a policy document is malformed."""

    code = "policy_error"


class AdminError(OpsError):
    """Raised by admin entry points for caller errors."""

    code = "admin_error"


class NotFoundError(AdminError):
    """Raised when a referenced record does not exist."""

    code = "not_found"


class ConflictError(AdminError):
    """Raised when a record is not in a state that permits the operation."""

    code = "conflict"


class ExecutorError(OpsError):
    """Failure raised by a capability adapter, with any captured output."""

    code = "executor_error"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        """Initialize the error with diagnostics captured from the adapter."""
        super().__init__(message, code=code, details=details)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code

    def diagnostics(self) -> dict[str, object] | None:
        """Return captured output suitable for a step's result field."""
        if self.stdout is None and self.stderr is None and self.exit_code is None:
            return None
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "code": self.exit_code,
            "error_code": self.code,
        }


class ExecutorValidationError(ExecutorError):
    """Disallowed command, tool or argument, or malformed params. Never retried."""

    code = "validation_error"
    retryable = False


class TransientExecutionError(ExecutorError):
    """Nonzero exit or network failure. Retried up to the step's budget."""

    code = "transient_error"


class ExecutionTimeoutError(TransientExecutionError):
    """Adapter or worker deadline exceeded. Retried, but recorded distinctly."""

    code = "timeout"
