"""Database lifecycle manager."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..config import DatabaseConfig
from ..errors import FatalExecutorError, ResourceReuseConflict, RetryExhaustedError
from ..executor.base import DeploymentExecutor, ExecutorOperation, ExecutorResult
from ..interaction import InputType, InteractionRequest, QuestionCategory, UserInteractionHandler
from ..orchestrator.models import AuditEventType, DatabaseRecord, OrchestrationOptions
from ..retry import RetryPolicy
from .config_writer import ConfigWriter, NullConfigWriter

if TYPE_CHECKING:
    from ..orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    数据库生命周期管理

    ensure() 是幂等的：
    1. 先检查数据库是否存在（永不重复创建）
    2. 不存在时创建，并把 database_id 写入配置文件
    3. 新建的数据库执行迁移；迁移失败只记录警告
    """

    def __init__(
        self,
        executor: DeploymentExecutor,
        store: "StateStore",
        retry_policy: RetryPolicy,
        config: Optional[DatabaseConfig] = None,
        config_writer: Optional[ConfigWriter] = None,
        interaction_handler: Optional[UserInteractionHandler] = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.config = config or DatabaseConfig()
        self.retry_policy = retry_policy
        self.migration_policy = retry_policy.with_attempts(
            self.config.migration_max_attempts, self.config.migration_base_delay
        )
        self.config_writer = config_writer or NullConfigWriter()
        self.interaction_handler = interaction_handler

    def ensure(
        self,
        domain: str,
        environment: str,
        options: OrchestrationOptions,
        database_name: str,
    ) -> DatabaseRecord:
        """Make sure ``database_name`` exists for ``domain`` in ``environment``.

        Raises:
            FatalExecutorError / RetryExhaustedError: existence check or creation failed.
            ResourceReuseConflict: the config artifact records a different database.
            ConfigWriteError: the database id could not be recorded.
        """
        params = {"database_name": database_name}
        check = self._call(
            ExecutorOperation.CHECK_DATABASE_EXISTS, domain, environment, params,
            self.config.check_timeout, self.retry_policy,
        )

        if check.data.get("exists"):
            record = DatabaseRecord(name=database_name, database_id=check.data.get("database_id"))
            self._check_conflict(domain, environment, record)
            logger.info(f"♻️  Reusing existing database {database_name} for {domain}")
            self.store.append_audit(
                AuditEventType.RESOURCE_REUSED,
                domain,
                {"resource": "database", "name": database_name, "database_id": record.database_id},
            )
        else:
            created = self._call(
                ExecutorOperation.CREATE_DATABASE, domain, environment, params,
                self.config.create_timeout, self.retry_policy,
            )
            record = DatabaseRecord(
                name=database_name, database_id=created.data.get("database_id"), created=True
            )
            logger.info(f"✅ Created database {database_name} ({record.database_id}) for {domain}")
            self.store.append_audit(
                AuditEventType.RESOURCE_CREATED,
                domain,
                {"resource": "database", "name": database_name, "database_id": record.database_id},
            )

        if not options.dry_run:
            try:
                self.config_writer.update(
                    domain,
                    environment,
                    {
                        "database": {
                            "name": record.name,
                            "database_id": record.database_id,
                            "binding": self.config.binding,
                        }
                    },
                )
            except Exception:
                if record.created:
                    self._discard(domain, environment, record)
                raise

        if record.created or self.config.apply_migrations_on_existing:
            self._migrate(domain, environment, record)

        return record

    def _migrate(self, domain: str, environment: str, record: DatabaseRecord) -> None:
        try:
            self._call(
                ExecutorOperation.APPLY_MIGRATIONS, domain, environment,
                {"database_name": record.name}, self.config.migration_timeout, self.migration_policy,
            )
        except (FatalExecutorError, RetryExhaustedError) as exc:
            # 迁移可以在带外重新执行，数据库存在才是 DATABASE 阶段的门槛
            record.migration_warning = f"Migrations failed for {record.name}: {exc.error_detail}"
            logger.warning(f"⚠️ {record.migration_warning}")
            self.store.append_audit(
                AuditEventType.RESOURCE_WARNING,
                domain,
                {"resource": "database", "name": record.name, "warning": record.migration_warning},
            )
            return
        record.migrations_applied = True
        logger.info(f"✅ Migrations applied to {record.name}")

    def _check_conflict(self, domain: str, environment: str, record: DatabaseRecord) -> None:
        recorded = self.config_writer.read(domain, environment).get("database", {})
        recorded_id = recorded.get("database_id")
        if not recorded_id or not record.database_id or recorded_id == record.database_id:
            return

        message = (
            f"Database {record.name} exists with id {record.database_id}, "
            f"but the config for {domain} ({environment}) records {recorded_id}"
        )
        details = {"database_name": record.name, "found": record.database_id, "recorded": recorded_id}
        handler = self.interaction_handler
        if handler is None or not handler.interactive:
            raise ResourceReuseConflict(message, details)

        response = handler.ask(
            InteractionRequest(
                question=f"Adopt the existing database {record.name} ({record.database_id})?",
                input_type=InputType.CONFIRM,
                category=QuestionCategory.RESOURCE_CONFLICT,
                context=message,
                default="n",
                domain=domain,
            )
        )
        if not response.confirmed:
            raise ResourceReuseConflict(message, details)

        warning = f"Adopted existing database {record.name} ({record.database_id}) replacing {recorded_id}"
        self.store.add_warning(domain, warning)
        self.store.append_audit(AuditEventType.RESOURCE_WARNING, domain, {"resource": "database", "warning": warning})

    def _discard(self, domain: str, environment: str, record: DatabaseRecord) -> None:
        """Drop a database created by this call when the phase cannot complete."""
        try:
            self._call(
                ExecutorOperation.DELETE_DATABASE, domain, environment,
                {"database_name": record.name}, self.config.create_timeout, self.retry_policy,
            )
            logger.info(f"🗑️  Removed database {record.name} created for {domain}")
        except (FatalExecutorError, RetryExhaustedError) as exc:
            logger.error(f"❌ Could not remove database {record.name}: {exc}")
            self.store.append_audit(
                AuditEventType.RESOURCE_WARNING,
                domain,
                {"resource": "database", "name": record.name, "warning": f"orphaned: {exc.error_detail}"},
            )

    def _call(
        self,
        operation: ExecutorOperation,
        domain: str,
        environment: str,
        params: Dict[str, Any],
        timeout: float,
        policy: RetryPolicy,
    ) -> ExecutorResult:
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

        return policy.call(self.executor, operation, domain, environment, params, timeout, on_retry)
