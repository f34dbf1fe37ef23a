"""Dry-run executor: simulates every mutating operation."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    COMPENSATING_OPERATIONS,
    MUTATING_OPERATIONS,
    DeploymentExecutor,
    ExecutorOperation,
    ExecutorResult,
)

logger = logging.getLogger(__name__)


class DryRunExecutor(DeploymentExecutor):
    """Wraps a real executor and short-circuits operations with side effects.

    Read-only operations (existence checks, health checks) still reach the
    wrapped executor.
    """

    def __init__(self, inner: DeploymentExecutor) -> None:
        self.inner = inner
        self._lock = threading.Lock()
        self.simulated: List[Tuple[ExecutorOperation, str]] = []

    def execute(
        self,
        operation: ExecutorOperation,
        domain: str,
        environment: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> ExecutorResult:
        if operation in MUTATING_OPERATIONS or operation in COMPENSATING_OPERATIONS:
            with self._lock:
                self.simulated.append((operation, domain))
            logger.info(f"🔍 [dry-run] would run {operation.value} for {domain} ({environment})")
            return self._synthetic(operation, domain, environment, params)
        return self.inner.execute(operation, domain, environment, params, timeout)

    @staticmethod
    def _synthetic(
        operation: ExecutorOperation, domain: str, environment: str, params: Dict[str, Any]
    ) -> ExecutorResult:
        output = f"[dry-run] {operation.value}"
        if operation == ExecutorOperation.CREATE_DATABASE:
            return ExecutorResult.ok(output, database_id=f"dry-run-{params.get('database_name', domain)}")
        if operation == ExecutorOperation.DEPLOY_ARTIFACT:
            worker = params.get("worker_name") or domain.replace(".", "-")
            return ExecutorResult.ok(output, url=f"https://{worker}-{environment}.workers.dev")
        return ExecutorResult.ok(output)
