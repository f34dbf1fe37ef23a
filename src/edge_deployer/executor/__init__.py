"""Deployment executor implementations."""

from .base import (
    DeploymentExecutor,
    ExecutorOperation,
    ExecutorResult,
    MUTATING_OPERATIONS,
    COMPENSATING_OPERATIONS,
    READ_ONLY_OPERATIONS,
)
from .command import WranglerExecutor, CommandResult
from .dry_run import DryRunExecutor
from .classifier import ErrorCategory, classify_error, is_retryable

__all__ = [
    "DeploymentExecutor",
    "ExecutorOperation",
    "ExecutorResult",
    "MUTATING_OPERATIONS",
    "COMPENSATING_OPERATIONS",
    "READ_ONLY_OPERATIONS",
    "WranglerExecutor",
    "CommandResult",
    "DryRunExecutor",
    "ErrorCategory",
    "classify_error",
    "is_retryable",
]
