"""Shared fixtures: a scriptable in-memory executor and isolated config."""

import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from edge_deployer.config import AppConfig
from edge_deployer.executor import DeploymentExecutor, ExecutorOperation, ExecutorResult
from edge_deployer.orchestrator import StateStore
from edge_deployer.retry import RetryPolicy


def no_sleep(delay: float) -> None:
    pass


class FakeExecutor(DeploymentExecutor):
    """In-memory backend.

    Databases created through it are remembered, so a second run sees them
    as existing. Failures are scripted per (operation, domain).
    """

    def __init__(self, op_delay: float = 0.0) -> None:
        self._lock = threading.Lock()
        self.calls: List[Tuple[ExecutorOperation, str, Dict[str, Any]]] = []
        self.databases: Dict[str, str] = {}
        self.secrets: Dict[Tuple[str, str], str] = {}
        # SET_SECRET for these names fails with a permission error
        self.rejected_secrets: Set[str] = set()
        self.op_delay = op_delay
        self.active: Dict[str, int] = defaultdict(int)
        self.peak_active_domains = 0
        self._failures: Dict[Tuple[ExecutorOperation, str], List[ExecutorResult]] = {}
        self._always: Dict[Tuple[ExecutorOperation, str], ExecutorResult] = {}

    def fail(
        self,
        operation: ExecutorOperation,
        domain: str,
        error: str = "boom",
        retryable: bool = False,
        times: Optional[int] = None,
    ) -> None:
        """Fail ``operation`` for ``domain``; forever when ``times`` is None."""
        result = ExecutorResult.fail(error, retryable=retryable)
        if times is None:
            self._always[(operation, domain)] = result
        else:
            self._failures[(operation, domain)] = [result] * times

    def execute(self, operation, domain, environment, params, timeout=None):
        with self._lock:
            self.calls.append((operation, domain, dict(params)))
            self.active[domain] += 1
            running = sum(1 for n in self.active.values() if n > 0)
            self.peak_active_domains = max(self.peak_active_domains, running)
        try:
            if self.op_delay:
                time.sleep(self.op_delay)
            return self._respond(operation, domain, environment, params)
        finally:
            with self._lock:
                self.active[domain] -= 1

    def _respond(self, operation, domain, environment, params) -> ExecutorResult:
        key = (operation, domain)
        with self._lock:
            if key in self._always:
                return self._always[key]
            queued = self._failures.get(key)
            if queued:
                return queued.pop(0)

            if operation == ExecutorOperation.CHECK_DATABASE_EXISTS:
                name = params["database_name"]
                return ExecutorResult.ok(exists=name in self.databases, database_id=self.databases.get(name))
            if operation == ExecutorOperation.CREATE_DATABASE:
                name = params["database_name"]
                self.databases[name] = f"db-{name}"
                return ExecutorResult.ok(database_id=self.databases[name])
            if operation == ExecutorOperation.DELETE_DATABASE:
                self.databases.pop(params["database_name"], None)
            if operation == ExecutorOperation.SET_SECRET and params["name"] in self.rejected_secrets:
                return ExecutorResult.fail("permission denied")
            if operation == ExecutorOperation.SET_SECRET:
                self.secrets[(domain, params["name"])] = params["value"]
            if operation == ExecutorOperation.DELETE_SECRET:
                self.secrets.pop((domain, params["name"]), None)
            if operation == ExecutorOperation.DEPLOY_ARTIFACT:
                return ExecutorResult.ok(url=f"https://{params['worker_name']}.workers.dev")
            return ExecutorResult.ok()

    def operations(self, domain: Optional[str] = None) -> List[ExecutorOperation]:
        return [op for op, d, _ in self.calls if domain is None or d == domain]

    def count(self, operation: ExecutorOperation, domain: Optional[str] = None) -> int:
        return self.operations(domain).count(operation)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.secrets.secrets_dir = str(tmp_path / "secrets")
    config.executor.config_dir = str(tmp_path / "config")
    config.state.state_dir = str(tmp_path / "deployments")
    config.retry.base_delay = 0.0
    config.retry.jitter = False
    config.database.migration_base_delay = 0.0
    config.executor.health_check_delay = 0.0
    return config


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False, sleep=no_sleep)


@pytest.fixture
def store() -> StateStore:
    return StateStore(environment="production")
