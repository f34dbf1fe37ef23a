"""Per-domain deployment pipeline: an explicit phase state machine."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..config import AppConfig
from ..errors import DeploymentError, FatalExecutorError, RetryExhaustedError, RunCancelledError
from ..executor.base import DeploymentExecutor, ExecutorOperation, ExecutorResult
from ..retry import RetryCallback, RetryPolicy
from .domain_resolver import DomainNames, resolve_names, validate_domain
from .models import (
    WORK_PHASES,
    AuditEventType,
    DeploymentErrorInfo,
    DomainState,
    DomainStatus,
    OrchestrationOptions,
    Phase,
    PhaseContext,
    PhaseResult,
    RollbackAction,
    RollbackKind,
)
from .rollback import RollbackCoordinator
from .state_store import StateStore

if TYPE_CHECKING:
    from ..resources.database import DatabaseManager
    from ..resources.secrets import SecretManager

logger = logging.getLogger(__name__)

PhaseHandler = Callable[[PhaseContext], PhaseResult]


class DeploymentPipeline:
    """
    单个域名的部署流水线

    按 PHASE_TRANSITIONS 顺序执行各阶段：
    - 成功：登记回滚动作（仅限有副作用的阶段），推进 phase，写 PHASE_COMPLETED
    - 失败：标记 FAILED，写 PHASE_FAILED，交给回滚协调器，不再执行后续阶段

    Phase boundaries are also the cancellation points: once ``cancel_event``
    is set a running pipeline stops before entering its next phase.
    """

    def __init__(
        self,
        store: StateStore,
        executor: DeploymentExecutor,
        database_manager: "DatabaseManager",
        secret_manager: "SecretManager",
        rollback_coordinator: RollbackCoordinator,
        retry_policy: RetryPolicy,
        config: Optional[AppConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.database_manager = database_manager
        self.secret_manager = secret_manager
        self.rollback_coordinator = rollback_coordinator
        self.retry_policy = retry_policy
        self.config = config or AppConfig()
        self.cancel_event = cancel_event or threading.Event()
        self.handlers: Dict[Phase, PhaseHandler] = {
            Phase.VALIDATION: self._validate,
            Phase.INITIALIZATION: self._initialize,
            Phase.DATABASE: self._database,
            Phase.SECRETS: self._secrets,
            Phase.DEPLOYMENT: self._deploy,
            Phase.POST_VALIDATION: self._post_validate,
        }

    def run(self, domain: str, options: OrchestrationOptions) -> DomainState:
        """Drive ``domain`` from PENDING to a terminal status."""
        environment = self.store.environment
        state = self.store.get_domain_state(domain)
        ctx = PhaseContext(
            domain=domain,
            environment=environment,
            options=options,
            deployment_id=state.deployment_id,
        )

        self.store.record_transition(domain, Phase.PENDING, Phase.PENDING, DomainStatus.IN_PROGRESS)
        self.store.append_audit(
            AuditEventType.DOMAIN_STARTED, domain, {"deployment_id": state.deployment_id}
        )
        logger.info(f"🚀 [{domain}] Deployment started ({environment})")

        current = Phase.PENDING
        for phase in WORK_PHASES:
            if self.cancel_event.is_set():
                self.store.append_audit(
                    AuditEventType.RUN_CANCELLED, domain, {"stopped_before": phase.value}
                )
                self._fail(domain, current, RunCancelledError("run cancelled"), options)
                return self.store.get_domain_state(domain)

            self.store.record_transition(domain, current, phase, DomainStatus.IN_PROGRESS)
            self.store.append_audit(AuditEventType.PHASE_STARTED, domain, {"phase": phase.value})
            logger.info(f"📋 [{domain}] {phase.value}")

            result = self._execute_phase(phase, ctx)
            if not result.success:
                self._fail(domain, phase, result.error, options)
                return self.store.get_domain_state(domain)

            self._complete_phase(domain, phase, result, ctx)
            current = phase

        self.store.record_transition(domain, current, Phase.COMPLETED, DomainStatus.COMPLETED)
        warnings = self.store.get_domain_state(domain).warnings
        if warnings:
            logger.info(f"✅ [{domain}] Completed with {len(warnings)} warning(s)")
        else:
            logger.info(f"✅ [{domain}] Completed")
        return self.store.get_domain_state(domain)

    # ------------------------------------------------------------------
    # Phase bookkeeping
    # ------------------------------------------------------------------

    def _execute_phase(self, phase: Phase, ctx: PhaseContext) -> PhaseResult:
        try:
            return self.handlers[phase](ctx)
        except DeploymentError as exc:
            return PhaseResult.failed(exc)
        except Exception as exc:
            logger.error(f"❌ [{ctx.domain}] Unexpected error in {phase.value}: {exc}", exc_info=True)
            return PhaseResult.failed(exc)

    def _complete_phase(self, domain: str, phase: Phase, result: PhaseResult, ctx: PhaseContext) -> None:
        for action in result.rollback_actions:
            if action.kind != RollbackKind.NOOP:
                self.store.add_rollback_action(domain, action)
        for warning in result.warnings:
            self.store.add_warning(domain, warning)
            self.store.append_audit(
                AuditEventType.PHASE_WARNING, domain, {"phase": phase.value, "warning": warning}
            )
        ctx.outputs.update(result.outputs)
        self.store.append_audit(
            AuditEventType.PHASE_COMPLETED,
            domain,
            {
                "phase": phase.value,
                "rollback_actions": [a.kind.value for a in result.rollback_actions],
                "warnings": len(result.warnings),
            },
        )

    def _fail(
        self,
        domain: str,
        phase: Phase,
        error: Optional[BaseException],
        options: OrchestrationOptions,
    ) -> None:
        error = error or DeploymentError(f"{phase.value} failed")
        info = DeploymentErrorInfo.from_exception(error, phase)
        self.store.mark_failed(domain, info)
        pending = [a.to_dict() for a in self.store.get_domain_state(domain).rollback_actions]
        self.store.append_audit(
            AuditEventType.PHASE_FAILED,
            domain,
            {"phase": phase.value, "error": info.to_dict(), "pending_rollback_actions": pending},
        )
        logger.error(f"❌ [{domain}] {phase.value} failed: {info.message}")

        if options.auto_rollback:
            self.rollback_coordinator.rollback(domain)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _validate(self, ctx: PhaseContext) -> PhaseResult:
        validate_domain(ctx.domain, ctx.environment, self.config.orchestration.environments)
        return PhaseResult.succeeded()

    def _initialize(self, ctx: PhaseContext) -> PhaseResult:
        names = resolve_names(
            ctx.domain,
            ctx.environment,
            service_name=self.config.orchestration.service_name,
            name_template=self.config.database.name_template,
        )
        self.store.update_metadata(
            ctx.domain,
            {
                "worker_name": names.worker_name,
                "database_name": names.database_name,
                "custom_url": names.custom_url,
            },
        )
        return PhaseResult.succeeded(outputs={"names": names})

    def _database(self, ctx: PhaseContext) -> PhaseResult:
        names: DomainNames = ctx.outputs["names"]
        record = self.database_manager.ensure(
            ctx.domain, ctx.environment, ctx.options, names.database_name
        )
        self.store.update_metadata(
            ctx.domain, {"database": record.to_dict(), "database_id": record.database_id}
        )

        actions: List[RollbackAction] = []
        if record.created:
            actions.append(
                RollbackAction(
                    domain=ctx.domain,
                    phase=Phase.DATABASE,
                    kind=RollbackKind.DELETE_DATABASE,
                    payload={"database_name": record.name, "database_id": record.database_id},
                )
            )
        warnings = [record.migration_warning] if record.migration_warning else []
        return PhaseResult.succeeded(outputs={"database": record}, rollback_actions=actions, warnings=warnings)

    def _secrets(self, ctx: PhaseContext) -> PhaseResult:
        names: DomainNames = ctx.outputs["names"]
        bundle = self.secret_manager.ensure(
            ctx.domain, ctx.environment, ctx.options, worker_name=names.worker_name
        )
        self.store.update_metadata(ctx.domain, {"secrets": bundle.summary()})

        # 只撤销本次新建并推送的密钥，复用的密钥保持不动
        revocable = [name for name in bundle.pushed if name in bundle.generated_names]
        actions: List[RollbackAction] = []
        if revocable:
            actions.append(
                RollbackAction(
                    domain=ctx.domain,
                    phase=Phase.SECRETS,
                    kind=RollbackKind.REVOKE_SECRET,
                    payload={"names": revocable, "worker_name": names.worker_name},
                )
            )
        return PhaseResult.succeeded(
            outputs={"secrets": {"generated": bundle.generated, "reused": bundle.reused}},
            rollback_actions=actions,
        )

    def _deploy(self, ctx: PhaseContext) -> PhaseResult:
        names: DomainNames = ctx.outputs["names"]
        result = self.retry_policy.call(
            self.executor,
            ExecutorOperation.DEPLOY_ARTIFACT,
            ctx.domain,
            ctx.environment,
            {"worker_name": names.worker_name, "custom_url": names.custom_url},
            self.config.executor.deploy_timeout,
            self._audit_retry(ctx.domain, ExecutorOperation.DEPLOY_ARTIFACT, self.retry_policy),
        )
        worker_url = result.data.get("url")
        self.store.update_metadata(
            ctx.domain, {"deployment_url": names.custom_url, "worker_url": worker_url}
        )
        logger.info(f"🔗 [{ctx.domain}] Worker URL: {worker_url or 'unknown'}")
        action = RollbackAction(
            domain=ctx.domain,
            phase=Phase.DEPLOYMENT,
            kind=RollbackKind.ROLLBACK_DEPLOYMENT,
            payload={"worker_name": names.worker_name},
        )
        return PhaseResult.succeeded(outputs={"worker_url": worker_url}, rollback_actions=[action])

    def _post_validate(self, ctx: PhaseContext) -> PhaseResult:
        if ctx.options.dry_run or ctx.options.skip_health_check:
            reason = "dry run" if ctx.options.dry_run else "health check disabled"
            logger.info(f"⏭️  [{ctx.domain}] Skipping health check ({reason})")
            return PhaseResult.succeeded(outputs={"health_check": "skipped"})

        # 优先使用 worker URL：自定义域名可能还没有完成 DNS 配置
        url = ctx.outputs.get("worker_url") or ctx.outputs["names"].custom_url
        executor_config = self.config.executor
        policy = replace(
            self.retry_policy,
            max_attempts=executor_config.health_check_attempts,
            base_delay=executor_config.health_check_delay,
            backoff_factor=1.0,
            jitter=False,
        )
        try:
            policy.call(
                self.executor,
                ExecutorOperation.HEALTH_CHECK,
                ctx.domain,
                ctx.environment,
                {"url": url},
                executor_config.health_check_timeout,
                self._audit_retry(ctx.domain, ExecutorOperation.HEALTH_CHECK, policy),
            )
        except (FatalExecutorError, RetryExhaustedError) as exc:
            # 传播延迟是正常现象，健康检查失败不影响 COMPLETED 状态
            warning = f"Health check failed for {url}: {exc.error_detail}"
            self.store.append_audit(
                AuditEventType.HEALTH_CHECK_FAILED, ctx.domain, {"url": url, "error": exc.error_detail}
            )
            logger.warning(f"⚠️ [{ctx.domain}] {warning}")
            return PhaseResult.succeeded(outputs={"health_check": "failed"}, warnings=[warning])

        self.store.append_audit(AuditEventType.HEALTH_CHECK_PASSED, ctx.domain, {"url": url})
        return PhaseResult.succeeded(outputs={"health_check": "passed"})

    def _audit_retry(
        self, domain: str, operation: ExecutorOperation, policy: RetryPolicy
    ) -> RetryCallback:
        def on_retry(attempt: int, result: ExecutorResult, delay: float) -> None:
            self.store.append_audit(
                AuditEventType.RESOURCE_RETRY,
                domain,
                {
                    "operation": operation.value,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "error": result.error_detail,
                    "delay": round(delay, 3),
                },
            )

        return on_retry
