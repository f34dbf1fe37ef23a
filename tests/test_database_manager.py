"""Tests for the database lifecycle manager."""

import pytest

from edge_deployer.errors import ConfigWriteError, FatalExecutorError, ResourceReuseConflict
from edge_deployer.executor import ExecutorOperation
from edge_deployer.interaction import AutoResponseHandler, CallbackInteractionHandler, InteractionResponse
from edge_deployer.orchestrator import AuditEventType, OrchestrationOptions
from edge_deployer.resources import ConfigWriter, DatabaseManager, JsonConfigWriter

DB = "a-com-production-db"


@pytest.fixture
def writer(tmp_path):
    return JsonConfigWriter(tmp_path / "config")


@pytest.fixture
def store(store):
    store.initialize_domains(["a.com"])
    return store


def make_manager(executor, store, policy, app_config, writer, handler=None):
    return DatabaseManager(
        executor, store, policy,
        config=app_config.database, config_writer=writer, interaction_handler=handler,
    )


class TestEnsure:
    def test_creates_missing_database_and_records_id(self, executor, store, policy, app_config, writer):
        manager = make_manager(executor, store, policy, app_config, writer)

        record = manager.ensure("a.com", "production", OrchestrationOptions(), DB)

        assert record.created
        assert record.database_id == f"db-{DB}"
        assert record.migrations_applied
        assert writer.read("a.com", "production")["database"] == {
            "name": DB, "database_id": f"db-{DB}", "binding": "DB",
        }
        assert store.get_audit_log(AuditEventType.RESOURCE_CREATED)

    def test_second_call_reuses_without_recreating(self, executor, store, policy, app_config, writer):
        manager = make_manager(executor, store, policy, app_config, writer)
        manager.ensure("a.com", "production", OrchestrationOptions(), DB)

        record = manager.ensure("a.com", "production", OrchestrationOptions(), DB)

        assert not record.created
        assert executor.count(ExecutorOperation.CREATE_DATABASE) == 1
        # 默认只对新建的数据库执行迁移
        assert executor.count(ExecutorOperation.APPLY_MIGRATIONS) == 1
        assert store.get_audit_log(AuditEventType.RESOURCE_REUSED)

    def test_migration_failure_is_a_warning(self, executor, store, policy, app_config, writer):
        executor.fail(ExecutorOperation.APPLY_MIGRATIONS, "a.com", "503 Service Unavailable", retryable=True)
        manager = make_manager(executor, store, policy, app_config, writer)

        record = manager.ensure("a.com", "production", OrchestrationOptions(), DB)

        assert record.created
        assert not record.migrations_applied
        assert "Migrations failed" in record.migration_warning
        assert executor.count(ExecutorOperation.APPLY_MIGRATIONS) == app_config.database.migration_max_attempts
        assert len(store.get_audit_log(AuditEventType.RESOURCE_RETRY)) == 5

    def test_create_failure_propagates(self, executor, store, policy, app_config, writer):
        executor.fail(ExecutorOperation.CREATE_DATABASE, "a.com", "Authentication error", retryable=False)
        manager = make_manager(executor, store, policy, app_config, writer)

        with pytest.raises(FatalExecutorError):
            manager.ensure("a.com", "production", OrchestrationOptions(), DB)

    def test_config_write_failure_discards_new_database(self, executor, store, policy, app_config):
        class BrokenWriter(ConfigWriter):
            def update(self, domain, environment, patch):
                raise ConfigWriteError("disk full")

            def read(self, domain, environment):
                return {}

        manager = make_manager(executor, store, policy, app_config, BrokenWriter())

        with pytest.raises(ConfigWriteError):
            manager.ensure("a.com", "production", OrchestrationOptions(), DB)
        assert executor.count(ExecutorOperation.DELETE_DATABASE) == 1
        assert DB not in executor.databases

    def test_dry_run_skips_config_writer(self, executor, store, policy, app_config, writer):
        manager = make_manager(executor, store, policy, app_config, writer)
        manager.ensure("a.com", "production", OrchestrationOptions(dry_run=True), DB)
        assert not writer.path_for("a.com").exists()


class TestConflicts:
    def _prepare(self, executor, writer):
        executor.databases[DB] = "db-actual"
        writer.update("a.com", "production", {"database": {"name": DB, "database_id": "db-recorded"}})

    def test_conflict_is_fatal_when_not_interactive(self, executor, store, policy, app_config, writer):
        self._prepare(executor, writer)
        manager = make_manager(executor, store, policy, app_config, writer, AutoResponseHandler())

        with pytest.raises(ResourceReuseConflict):
            manager.ensure("a.com", "production", OrchestrationOptions(), DB)

    def test_operator_can_adopt_existing(self, executor, store, policy, app_config, writer):
        self._prepare(executor, writer)
        handler = CallbackInteractionHandler(ask_callback=lambda req: InteractionResponse(value="yes"))
        manager = make_manager(executor, store, policy, app_config, writer, handler)

        record = manager.ensure("a.com", "production", OrchestrationOptions(), DB)

        assert record.database_id == "db-actual"
        assert writer.read("a.com", "production")["database"]["database_id"] == "db-actual"
        assert any("Adopted" in w for w in store.get_domain_state("a.com").warnings)

    def test_operator_declines(self, executor, store, policy, app_config, writer):
        self._prepare(executor, writer)
        handler = CallbackInteractionHandler(ask_callback=lambda req: InteractionResponse(value="no"))
        manager = make_manager(executor, store, policy, app_config, writer, handler)

        with pytest.raises(ResourceReuseConflict):
            manager.ensure("a.com", "production", OrchestrationOptions(), DB)
