"""Rollback coordinator: compensates one failed domain's completed phases."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import FatalExecutorError, RetryExhaustedError, RollbackFailure
from ..executor.base import DeploymentExecutor, ExecutorOperation, ExecutorResult
from ..retry import RetryPolicy
from .models import AuditEventType, RollbackAction, RollbackKind
from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class RollbackReport:
    domain: str
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    unresolved: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.unresolved


class RollbackCoordinator:
    """
    回滚协调器

    按完成顺序的逆序执行某个域名的回滚动作。每个补偿操作有独立的重试
    预算；失败的动作标记为 unresolved 并继续执行下一个。范围始终只限于
    失败的那个域名，不会级联到依赖它的域名。
    """

    def __init__(
        self,
        executor: DeploymentExecutor,
        store: StateStore,
        retry_policy: RetryPolicy,
        timeout: Optional[float] = 60.0,
    ) -> None:
        self.executor = executor
        self.store = store
        self.retry_policy = retry_policy
        self.timeout = timeout

    def rollback(self, domain: str) -> RollbackReport:
        report = RollbackReport(domain=domain)
        actions = self.store.take_rollback_actions(domain)
        if not actions:
            logger.info(f"🔄 [{domain}] Nothing to roll back")
            return report

        environment = self.store.environment
        logger.info(f"🔄 [{domain}] Rolling back {len(actions)} action(s)")
        self.store.append_audit(
            AuditEventType.ROLLBACK_STARTED,
            domain,
            {"actions": [{"action_id": a.action_id, "kind": a.kind.value, "phase": a.phase.value} for a in actions]},
        )

        for action in reversed(actions):
            if action.kind == RollbackKind.NOOP:
                report.skipped.append(action.action_id)
                continue
            failure = self._execute(action, environment)
            if failure is None:
                report.executed.append(action.action_id)
                self.store.append_audit(
                    AuditEventType.ROLLBACK_EXECUTED,
                    domain,
                    {"action_id": action.action_id, "kind": action.kind.value, "phase": action.phase.value},
                )
                logger.info(f"   ✅ {action.kind.value} ({action.phase.value})")
                continue

            entry = {
                "action_id": action.action_id,
                "kind": action.kind.value,
                "phase": action.phase.value,
                "payload": action.payload,
                "error": failure.message,
            }
            report.unresolved.append(entry)
            self.store.append_audit(AuditEventType.ROLLBACK_ACTION_FAILED, domain, entry)
            logger.error(f"   ❌ {failure.message}")

        if report.unresolved:
            self.store.update_metadata(domain, {"unresolved_rollback_actions": report.unresolved})
        else:
            self.store.mark_rolled_back(domain)

        self.store.append_audit(
            AuditEventType.ROLLBACK_COMPLETED,
            domain,
            {
                "executed": len(report.executed),
                "unresolved": len(report.unresolved),
                "rolled_back": report.success,
            },
        )
        if report.success:
            logger.info(f"🔄 [{domain}] Rolled back")
        else:
            logger.warning(f"⚠️ [{domain}] Rollback left {len(report.unresolved)} unresolved action(s)")
        return report

    def _execute(self, action: RollbackAction, environment: str) -> Optional[RollbackFailure]:
        errors = []
        for operation, params in self._operations(action):
            try:
                self.retry_policy.call(
                    self.executor,
                    operation,
                    action.domain,
                    environment,
                    params,
                    self.timeout,
                    self._audit_retry(action, operation),
                )
            except (FatalExecutorError, RetryExhaustedError) as exc:
                errors.append(exc.message)
        if not errors:
            return None
        return RollbackFailure(
            f"{action.kind.value} for {action.domain} did not complete: {'; '.join(errors)}",
            {"action_id": action.action_id},
        )

    @staticmethod
    def _operations(action: RollbackAction) -> List[Tuple[ExecutorOperation, Dict[str, Any]]]:
        if action.kind == RollbackKind.DELETE_DATABASE:
            return [(ExecutorOperation.DELETE_DATABASE, {"database_name": action.payload["database_name"]})]
        if action.kind == RollbackKind.REVOKE_SECRET:
            worker_name = action.payload.get("worker_name")
            return [
                (ExecutorOperation.DELETE_SECRET, {"name": name, "worker_name": worker_name})
                for name in action.payload.get("names", [])
            ]
        if action.kind == RollbackKind.ROLLBACK_DEPLOYMENT:
            return [(ExecutorOperation.ROLLBACK_DEPLOYMENT, dict(action.payload))]
        return []

    def _audit_retry(self, action: RollbackAction, operation: ExecutorOperation):
        def on_retry(attempt: int, result: ExecutorResult, delay: float) -> None:
            self.store.append_audit(
                AuditEventType.RESOURCE_RETRY,
                action.domain,
                {
                    "operation": operation.value,
                    "action_id": action.action_id,
                    "attempt": attempt,
                    "error": result.error_detail,
                },
            )

        return on_retry
