"""Tests for the rollback coordinator."""

import pytest

from edge_deployer.executor import ExecutorOperation
from edge_deployer.orchestrator import (
    AuditEventType,
    DeploymentErrorInfo,
    DomainStatus,
    Phase,
    RollbackAction,
    RollbackCoordinator,
    RollbackKind,
)


@pytest.fixture
def failed_store(store):
    store.initialize_domains(["a.com", "b.com"])
    actions = [
        RollbackAction("a.com", Phase.DATABASE, RollbackKind.DELETE_DATABASE, {"database_name": "a-db"}),
        RollbackAction("a.com", Phase.SECRETS, RollbackKind.REVOKE_SECRET, {"names": ["K1", "K2"], "worker_name": "w"}),
        RollbackAction("a.com", Phase.DEPLOYMENT, RollbackKind.ROLLBACK_DEPLOYMENT, {"worker_name": "w"}),
    ]
    for action in actions:
        store.add_rollback_action("a.com", action)
    store.mark_failed("a.com", DeploymentErrorInfo(kind="FatalExecutorError", message="boom"))
    return store


def test_runs_actions_in_reverse_order(failed_store, executor, policy):
    report = RollbackCoordinator(executor, failed_store, policy).rollback("a.com")

    assert report.success
    assert executor.operations("a.com") == [
        ExecutorOperation.ROLLBACK_DEPLOYMENT,
        ExecutorOperation.DELETE_SECRET,
        ExecutorOperation.DELETE_SECRET,
        ExecutorOperation.DELETE_DATABASE,
    ]
    assert failed_store.get_domain_state("a.com").status == DomainStatus.ROLLED_BACK
    events = failed_store.get_audit_log(domain="a.com")
    assert events[-1].event_type == AuditEventType.ROLLBACK_COMPLETED
    assert len(failed_store.get_audit_log(AuditEventType.ROLLBACK_EXECUTED)) == 3
    deletes = [p for op, _, p in executor.calls if op == ExecutorOperation.DELETE_SECRET]
    assert [(p["name"], p["worker_name"]) for p in deletes] == [("K1", "w"), ("K2", "w")]


def test_failed_action_is_unresolved_and_others_continue(failed_store, executor, policy):
    executor.fail(ExecutorOperation.DELETE_SECRET, "a.com", "forbidden")

    report = RollbackCoordinator(executor, failed_store, policy).rollback("a.com")

    assert not report.success
    assert [u["kind"] for u in report.unresolved] == ["REVOKE_SECRET"]
    assert executor.count(ExecutorOperation.DELETE_DATABASE) == 1
    state = failed_store.get_domain_state("a.com")
    assert state.status == DomainStatus.FAILED
    assert state.metadata["unresolved_rollback_actions"][0]["payload"] == {"names": ["K1", "K2"], "worker_name": "w"}
    summary = failed_store.get_portfolio_summary().get("a.com")
    assert summary.unresolved_rollback_actions


def test_compensation_retries_transient_errors(failed_store, executor, policy):
    executor.fail(ExecutorOperation.DELETE_DATABASE, "a.com", "network timeout", retryable=True, times=2)

    report = RollbackCoordinator(executor, failed_store, policy).rollback("a.com")

    assert report.success
    assert executor.count(ExecutorOperation.DELETE_DATABASE) == 3


def test_never_touches_other_domains(failed_store, executor, policy):
    RollbackCoordinator(executor, failed_store, policy).rollback("a.com")
    assert executor.operations("b.com") == []
    assert failed_store.get_domain_state("b.com").status == DomainStatus.PENDING


def test_runs_once(failed_store, executor, policy):
    coordinator = RollbackCoordinator(executor, failed_store, policy)
    coordinator.rollback("a.com")
    second = coordinator.rollback("a.com")
    assert second.executed == []
    assert executor.count(ExecutorOperation.DELETE_DATABASE) == 1


def test_nothing_to_roll_back_keeps_failed(store, executor, policy):
    store.initialize_domains(["a.com"])
    store.mark_failed("a.com", DeploymentErrorInfo(kind="ValidationError", message="bad"))

    report = RollbackCoordinator(executor, store, policy).rollback("a.com")

    assert report.success
    assert store.get_domain_state("a.com").status == DomainStatus.FAILED
    assert executor.calls == []
