"""Multi-domain orchestrator: schedules domain pipelines on a bounded pool."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..errors import RunCancelledError, ValidationError
from .coordinator import CrossDomainCoordinator, DependencyEdge, ExecutionPlan
from .models import (
    AuditEvent,
    AuditEventType,
    DeploymentErrorInfo,
    DomainStatus,
    OrchestrationOptions,
    Phase,
    PortfolioSummary,
)
from .pipeline import DeploymentPipeline
from .state_store import StateStore

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class DeploymentOrchestrator:
    """
    多域名部署编排器

    - 先由 CrossDomainCoordinator 校验依赖并排序，校验失败时不启动任何流水线
    - 最多同时运行 concurrency_limit 条流水线
    - 依赖全部 COMPLETED 后才启动；任一依赖失败则直接标记为 FAILED
    - 某个域名失败不会影响无关的域名
    - run() 在所有域名到达终态后才返回
    """

    def __init__(
        self,
        store: StateStore,
        pipeline: DeploymentPipeline,
        options: Optional[OrchestrationOptions] = None,
        coordinator: Optional[CrossDomainCoordinator] = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.options = options or OrchestrationOptions()
        self.coordinator = coordinator or CrossDomainCoordinator()
        self._cancel_lock = threading.Lock()
        self._cancel_reason: Optional[str] = None

    @property
    def orchestration_id(self) -> str:
        return self.store.orchestration_id

    @property
    def cancelled(self) -> bool:
        return self.pipeline.cancel_event.is_set()

    def cancel(self, reason: str = "run cancelled") -> None:
        """Stop scheduling new domains; in-flight ones stop at their next phase."""
        with self._cancel_lock:
            if self.pipeline.cancel_event.is_set():
                return
            self._cancel_reason = reason
            self.pipeline.cancel_event.set()
        logger.warning(f"⚠️ Cancelling run {self.orchestration_id}: {reason}")
        self.store.append_audit(AuditEventType.RUN_CANCELLED, None, {"reason": reason})

    def run(
        self,
        domains: Sequence[str],
        dependency_edges: Iterable[DependencyEdge] = (),
    ) -> PortfolioSummary:
        """Deploy every domain and return the portfolio summary.

        Raises:
            ValidationError: the domain set or dependency graph is invalid; no
                pipeline has started in that case.
        """
        if self.options.concurrency_limit < 1:
            raise ValidationError("concurrency_limit must be at least 1")
        plan = self.coordinator.plan(domains, dependency_edges)
        self.store.initialize_domains(list(domains))

        limit = self.options.concurrency_limit
        logger.info("")
        logger.info("=" * 60)
        logger.info("🚀 MULTI-DOMAIN DEPLOYMENT")
        logger.info("=" * 60)
        logger.info(f"Orchestration: {self.orchestration_id}")
        logger.info(f"Environment: {self.store.environment}")
        logger.info(f"Domains: {len(plan.order)} (concurrency {limit})")
        if self.options.dry_run:
            logger.info("Mode: DRY RUN (no changes will be made)")
        logger.info("Order:")
        for i, domain in enumerate(plan.order, 1):
            deps = sorted(plan.dependencies[domain])
            suffix = f" (after {', '.join(deps)})" if deps else ""
            logger.info(f"  {i}. {domain}{suffix}")
        logger.info("=" * 60)

        deadline = None
        if self.options.run_timeout:
            deadline = time.monotonic() + self.options.run_timeout

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="edge-deployer") as pool:
            self._schedule(plan, pool, limit, deadline)

        summary = self.store.finalize()
        self._log_summary(summary)
        return summary

    def export_audit_log(self, orchestration_id: str) -> List[AuditEvent]:
        return self.store.export_audit_log(orchestration_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(
        self,
        plan: ExecutionPlan,
        pool: ThreadPoolExecutor,
        limit: int,
        deadline: Optional[float],
    ) -> None:
        remaining: List[str] = list(plan.order)
        running: Dict[Future, str] = {}
        finished: Dict[str, DomainStatus] = {}
        completed: Set[str] = set()

        while remaining or running:
            try:
                if deadline is not None and time.monotonic() > deadline:
                    self.cancel("run timeout")

                if self.cancelled and remaining:
                    for domain in remaining:
                        self._fail_not_started(domain)
                        finished[domain] = DomainStatus.FAILED
                    remaining = []

                remaining = self._fail_blocked(plan, remaining, finished)

                for domain in list(remaining):
                    if len(running) >= limit:
                        break
                    if plan.ready(domain, completed):
                        remaining.remove(domain)
                        running[pool.submit(self.pipeline.run, domain, self.options)] = domain

                if not running:
                    continue

                done, _ = wait(list(running), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    domain = running.pop(future)
                    finished[domain] = self._collect(domain, future)
                    if finished[domain] == DomainStatus.COMPLETED:
                        completed.add(domain)
            except KeyboardInterrupt:
                # 让正在执行的调用完成，然后在阶段边界停止
                self.cancel("interrupted by user")

    def _fail_blocked(
        self,
        plan: ExecutionPlan,
        remaining: List[str],
        finished: Dict[str, DomainStatus],
    ) -> List[str]:
        """Mark domains whose dependencies failed; cascades through the graph."""
        changed = True
        while changed:
            changed = False
            for domain in list(remaining):
                failed = sorted(
                    dep for dep in plan.dependencies[domain]
                    if finished.get(dep) in (DomainStatus.FAILED, DomainStatus.ROLLED_BACK)
                )
                if not failed:
                    continue
                remaining.remove(domain)
                finished[domain] = DomainStatus.FAILED
                changed = True
                self.store.mark_failed(
                    domain,
                    DeploymentErrorInfo(
                        kind="ValidationError",
                        message="upstream dependency failed",
                        phase=Phase.PENDING,
                        details={"failed_dependencies": failed},
                    ),
                )
                self.store.append_audit(
                    AuditEventType.DEPENDENCY_FAILED, domain, {"failed_dependencies": failed}
                )
                logger.error(f"❌ [{domain}] upstream dependency failed: {', '.join(failed)}")
        return remaining

    def _fail_not_started(self, domain: str) -> None:
        info = DeploymentErrorInfo.from_exception(RunCancelledError("run cancelled"), Phase.PENDING)
        self.store.mark_failed(domain, info)
        self.store.append_audit(
            AuditEventType.RUN_CANCELLED, domain, {"reason": self._cancel_reason, "started": False}
        )
        logger.warning(f"⚠️ [{domain}] not started: run cancelled")

    def _collect(self, domain: str, future: Future) -> DomainStatus:
        try:
            return future.result().status
        except Exception as exc:
            # 流水线本身出错（不应发生）：保证该域名仍然到达终态
            logger.error(f"❌ [{domain}] pipeline crashed: {exc}", exc_info=True)
            state = self.store.get_domain_state(domain)
            if not state.is_terminal:
                self.store.mark_failed(domain, DeploymentErrorInfo.from_exception(exc, state.phase))
            return self.store.get_domain_state(domain).status

    def _log_summary(self, summary: PortfolioSummary) -> None:
        logger.info("")
        logger.info("=" * 60)
        logger.info("📊 DEPLOYMENT SUMMARY")
        logger.info("=" * 60)
        icons = {
            DomainStatus.COMPLETED: "✅",
            DomainStatus.FAILED: "❌",
            DomainStatus.ROLLED_BACK: "🔄",
        }
        for item in summary.per_domain:
            line = f"{icons.get(item.status, '•')} {item.domain}: {item.status.value} ({item.phase.value})"
            if item.error:
                line += f" - {item.error.message}"
            logger.info(line)
            for warning in item.warnings:
                logger.info(f"   ⚠️ {warning}")
        logger.info(
            f"Completed {summary.completed_domains}/{summary.total_domains}, "
            f"failed {summary.failed_domains} (rolled back {summary.rolled_back_domains})"
        )
        logger.info("=" * 60)
