import json
import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from edge_deployer.config import AppConfig
from edge_deployer.executor import DryRunExecutor, ExecutorOperation, ExecutorResult
from edge_deployer.executor.base import DeploymentExecutor
from edge_deployer.orchestrator import AuditEventType, DomainStatus
from edge_deployer.workflow import DeploymentRequest, DeploymentWorkflow


class RecordingExecutor(DeploymentExecutor):
    def __init__(self) -> None:
        self.operations = []

    def execute(self, operation, domain, environment, params, timeout=None):  # type: ignore[override]
        self.operations.append(operation)
        if operation == ExecutorOperation.CHECK_DATABASE_EXISTS:
            return ExecutorResult.ok(exists=False, database_id=None)
        if operation == ExecutorOperation.CREATE_DATABASE:
            return ExecutorResult.ok(database_id="db-1")
        if operation == ExecutorOperation.DEPLOY_ARTIFACT:
            return ExecutorResult.ok(url="https://w.workers.dev")
        return ExecutorResult.ok()


class WorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        root = Path(self.tmp.name)
        self.config = AppConfig()
        self.config.secrets.secrets_dir = str(root / "secrets")
        self.config.executor.config_dir = str(root / "config")
        self.config.state.state_dir = str(root / "deployments")
        self.config.retry.base_delay = 0.0
        self.executor = RecordingExecutor()
        env = mock.patch.dict(os.environ, {"EDGE_DEPLOYER_DRY_RUN": ""})
        env.start()
        self.addCleanup(env.stop)

    def _workflow(self) -> DeploymentWorkflow:
        return DeploymentWorkflow(self.config, executor=self.executor, sleep=lambda delay: None)

    def test_run_persists_state_and_domain_config(self) -> None:
        workflow = self._workflow()
        summary = workflow.run(DeploymentRequest(domains=["a.com"], environment="staging"))

        self.assertTrue(summary.success)
        self.assertEqual(summary.environment, "staging")
        state_file = Path(self.config.state.state_dir) / f"{summary.orchestration_id}.json"
        self.assertTrue(state_file.is_file())
        domain_config = json.loads((Path(self.config.executor.config_dir) / "a.com.json").read_text())
        self.assertEqual(domain_config["staging"]["database"]["database_id"], "db-1")

    def test_defaults_come_from_config(self) -> None:
        self.config.orchestration.concurrency_limit = 4
        self.config.orchestration.default_environment = "development"
        options = self._workflow().build_options(DeploymentRequest(domains=["a.com"]))
        self.assertEqual(options.concurrency_limit, 4)
        self.assertTrue(options.reuse_existing)
        self.assertFalse(options.dry_run)

    def test_env_var_enables_dry_run(self) -> None:
        with mock.patch.dict(os.environ, {"EDGE_DEPLOYER_DRY_RUN": "true"}):
            workflow = self._workflow()
            orchestrator = workflow.create_orchestrator(DeploymentRequest(domains=["a.com"]))
        self.assertTrue(orchestrator.options.dry_run)
        self.assertIsInstance(orchestrator.pipeline.executor, DryRunExecutor)

    def test_export_audit_log_of_earlier_run(self) -> None:
        summary = self._workflow().run(DeploymentRequest(domains=["a.com"], skip_health_check=True))

        events = self._workflow().export_audit_log(summary.orchestration_id)

        self.assertEqual(events[0].event_type, AuditEventType.PORTFOLIO_INITIALIZED)
        self.assertEqual(events[-1].event_type, AuditEventType.PORTFOLIO_COMPLETED)
        self.assertNotIn(ExecutorOperation.HEALTH_CHECK, self.executor.operations)

    def test_export_unknown_run(self) -> None:
        with self.assertRaises(FileNotFoundError):
            self._workflow().export_audit_log("orchestration-missing")

    def test_dependency_edges_are_forwarded(self) -> None:
        summary = self._workflow().run(
            DeploymentRequest(
                domains=["bad_domain", "b.com"],
                dependency_edges=[("b.com", "bad_domain")],
            )
        )
        self.assertEqual(summary.get("b.com").status, DomainStatus.FAILED)
        self.assertEqual(summary.get("b.com").error.message, "upstream dependency failed")


if __name__ == "__main__":
    unittest.main()
