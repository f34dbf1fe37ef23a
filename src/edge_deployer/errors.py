"""Error taxonomy for the deployment engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class DeploymentError(RuntimeError):
    """Base class for every error raised by the deployment engine."""

    code = "DEPLOYMENT_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(DeploymentError):
    """Bad input, circular dependency or missing prerequisite. Never retried."""

    code = "VALIDATION_ERROR"


class ExecutorError(DeploymentError):
    """Raised when a Deployment Executor operation fails."""

    code = "EXECUTOR_ERROR"

    def __init__(
        self,
        operation: str,
        domain: str,
        error_detail: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.operation = operation
        self.domain = domain
        self.error_detail = error_detail
        super().__init__(f"{operation} failed for {domain}: {error_detail}", details)


class TransientExecutorError(ExecutorError):
    """Retryable executor failure (network, rate limit, timeout)."""

    code = "TRANSIENT_EXECUTOR_ERROR"
    retryable = True


class RetryExhaustedError(TransientExecutorError):
    """A transient failure that kept failing until every retry attempt was used."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, domain: str, error_detail: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            operation,
            domain,
            f"{error_detail} (gave up after {attempts} attempts)",
            {"attempts": attempts},
        )


class FatalExecutorError(ExecutorError):
    """Non-retryable executor failure (permission denied, malformed input)."""

    code = "FATAL_EXECUTOR_ERROR"


class ResourceReuseConflict(DeploymentError):
    """An existing resource does not match the requested configuration."""

    code = "RESOURCE_REUSE_CONFLICT"


class RollbackFailure(DeploymentError):
    """A compensating action could not be completed."""

    code = "ROLLBACK_FAILURE"


class ConfigWriteError(DeploymentError):
    """The external configuration artifact could not be updated."""

    code = "CONFIG_WRITE_ERROR"


class SecretDistributionError(DeploymentError):
    """The secret bundle or one of its distribution files could not be written."""

    code = "SECRET_DISTRIBUTION_ERROR"


class StateTransitionError(DeploymentError):
    """A requested phase/status transition violates the state machine."""

    code = "STATE_TRANSITION_ERROR"


class StateStoreClosedError(DeploymentError):
    """Write attempted after the portfolio reached its terminal state."""

    code = "STATE_STORE_CLOSED"


class RunCancelledError(DeploymentError):
    """The orchestration run was cancelled before the domain finished."""

    code = "RUN_CANCELLED"


def error_kind(exc: BaseException) -> str:
    """Return the taxonomy name used in audit events and summaries."""
    if isinstance(exc, DeploymentError):
        return type(exc).__name__
    return "UnexpectedError"
