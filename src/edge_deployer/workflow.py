"""High-level workflow: wires config, executor, managers and orchestrator for one run."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .config import AppConfig, env_dry_run
from .executor import DeploymentExecutor, DryRunExecutor, WranglerExecutor
from .interaction import UserInteractionHandler, create_handler
from .orchestrator import (
    AuditEvent,
    DeploymentOrchestrator,
    DeploymentPipeline,
    OrchestrationOptions,
    PortfolioSummary,
    RollbackCoordinator,
    StateStore,
)
from .resources import ConfigWriter, DatabaseManager, JsonConfigWriter, SecretManager
from .retry import RetryPolicy
from .utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DeploymentRequest:
    """One run request captured from the CLI or an embedding caller."""

    domains: List[str]
    environment: Optional[str] = None          # 默认使用 orchestration.default_environment
    concurrency_limit: Optional[int] = None
    dry_run: bool = False
    # (dependent, dependency)：dependent 在 dependency 完成之后部署
    dependency_edges: Sequence[Tuple[str, str]] = ()
    reuse_existing: bool = True
    rotate_all: bool = False
    skip_health_check: bool = False


class DeploymentWorkflow:
    """Builds and runs the orchestration engine for a deployment request."""

    def __init__(
        self,
        config: AppConfig,
        executor: Optional[DeploymentExecutor] = None,
        interaction_handler: Optional[UserInteractionHandler] = None,
        config_writer: Optional[ConfigWriter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.executor = executor or WranglerExecutor(config.executor)
        # 交互处理器 - 默认按配置选择（auto 模式下资源冲突直接失败）
        self.interaction_handler = interaction_handler or create_handler(config.interaction.mode)
        self.config_writer = config_writer or JsonConfigWriter(config.executor.config_dir)
        self.sleep = sleep
        self.orchestrator: Optional[DeploymentOrchestrator] = None

    def build_options(self, request: DeploymentRequest) -> OrchestrationOptions:
        orchestration = self.config.orchestration
        return OrchestrationOptions(
            reuse_existing=request.reuse_existing and self.config.secrets.reuse_existing,
            rotate_all=request.rotate_all or self.config.secrets.rotate_all,
            dry_run=request.dry_run or env_dry_run(),
            concurrency_limit=request.concurrency_limit or orchestration.concurrency_limit,
            skip_health_check=request.skip_health_check,
            auto_rollback=orchestration.auto_rollback,
            run_timeout=orchestration.run_timeout,
        )

    def create_orchestrator(self, request: DeploymentRequest) -> DeploymentOrchestrator:
        options = self.build_options(request)
        environment = request.environment or self.config.orchestration.default_environment
        executor = DryRunExecutor(self.executor) if options.dry_run else self.executor

        store = StateStore(
            environment=environment,
            concurrency_limit=options.concurrency_limit,
            dry_run=options.dry_run,
            persist=self.config.state.persist,
            state_dir=self.config.state.state_dir,
        )
        retry_policy = RetryPolicy.from_config(self.config.retry, sleep=self.sleep)
        database_manager = DatabaseManager(
            executor,
            store,
            retry_policy,
            config=self.config.database,
            config_writer=self.config_writer,
            interaction_handler=self.interaction_handler,
        )
        secret_manager = SecretManager(executor, store, retry_policy, config=self.config.secrets)
        rollback = RollbackCoordinator(
            executor, store, retry_policy, timeout=self.config.executor.rollback_timeout
        )
        pipeline = DeploymentPipeline(
            store,
            executor,
            database_manager,
            secret_manager,
            rollback,
            retry_policy,
            config=self.config,
        )
        return DeploymentOrchestrator(store, pipeline, options=options)

    def run(self, request: DeploymentRequest) -> PortfolioSummary:
        """Run the deployment and return the portfolio summary."""
        self.orchestrator = self.create_orchestrator(request)
        logger.info(
            "Preparing deployment of %d domain(s) to %s",
            len(request.domains),
            self.orchestrator.store.environment,
        )
        return self.orchestrator.run(request.domains, request.dependency_edges)

    def cancel(self, reason: str = "run cancelled") -> None:
        if self.orchestrator is not None:
            self.orchestrator.cancel(reason)

    def export_audit_log(self, orchestration_id: str) -> List[AuditEvent]:
        """Audit log of the current run, or of an earlier persisted run."""
        if self.orchestrator is not None and self.orchestrator.orchestration_id == orchestration_id:
            return self.orchestrator.export_audit_log(orchestration_id)
        return StateStore.load_audit_log(self.config.state.state_dir, orchestration_id)
