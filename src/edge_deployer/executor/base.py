"""Deployment executor interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ExecutorOperation(str, Enum):
    """执行器支持的操作"""
    CREATE_DATABASE = "createDatabase"
    APPLY_MIGRATIONS = "applyMigrations"
    CHECK_DATABASE_EXISTS = "checkDatabaseExists"
    SET_SECRET = "setSecret"
    DEPLOY_ARTIFACT = "deployArtifact"
    HEALTH_CHECK = "healthCheck"
    # 补偿操作（回滚使用）
    DELETE_DATABASE = "deleteDatabase"
    DELETE_SECRET = "deleteSecret"
    ROLLBACK_DEPLOYMENT = "rollbackDeployment"


MUTATING_OPERATIONS = frozenset({
    ExecutorOperation.CREATE_DATABASE,
    ExecutorOperation.APPLY_MIGRATIONS,
    ExecutorOperation.SET_SECRET,
    ExecutorOperation.DEPLOY_ARTIFACT,
})

COMPENSATING_OPERATIONS = frozenset({
    ExecutorOperation.DELETE_DATABASE,
    ExecutorOperation.DELETE_SECRET,
    ExecutorOperation.ROLLBACK_DEPLOYMENT,
})

READ_ONLY_OPERATIONS = frozenset({
    ExecutorOperation.CHECK_DATABASE_EXISTS,
    ExecutorOperation.HEALTH_CHECK,
})


@dataclass
class ExecutorResult:
    """Outcome of one executor operation."""
    success: bool
    output: str = ""
    retryable: bool = False
    error_detail: Optional[str] = None
    # 结构化产出，例如 database_id / url / exists
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: str = "", **data: Any) -> "ExecutorResult":
        return cls(success=True, output=output, data=data)

    @classmethod
    def fail(cls, error_detail: str, retryable: bool = False, output: str = "") -> "ExecutorResult":
        return cls(success=False, output=output, retryable=retryable, error_detail=error_detail)


class DeploymentExecutor(ABC):
    """Performs one side-effecting operation against the deployment backend.

    Implementations must not raise for backend failures; they report them as
    an ``ExecutorResult`` with ``retryable`` set for transient conditions.
    """

    @abstractmethod
    def execute(
        self,
        operation: ExecutorOperation,
        domain: str,
        environment: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ExecutorResult:
        """Run ``operation`` for ``domain`` in ``environment``."""
