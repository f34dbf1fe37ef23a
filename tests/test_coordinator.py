"""Tests for dependency validation and execution ordering."""

import pytest

from edge_deployer.errors import ValidationError
from edge_deployer.orchestrator import CrossDomainCoordinator


@pytest.fixture
def coordinator():
    return CrossDomainCoordinator()


def test_no_edges_keeps_input_order(coordinator):
    plan = coordinator.plan(["c.com", "a.com", "b.com"])
    assert plan.order == ["c.com", "a.com", "b.com"]


def test_dependencies_come_first(coordinator):
    plan = coordinator.plan(
        ["app.com", "api.com", "web.com"],
        [("app.com", "api.com"), ("web.com", "app.com")],
    )
    assert plan.order == ["api.com", "app.com", "web.com"]
    assert plan.dependencies["app.com"] == {"api.com"}
    assert plan.ready("app.com", ["api.com"])
    assert not plan.ready("web.com", ["api.com"])


def test_cycle_is_rejected_with_path(coordinator):
    with pytest.raises(ValidationError) as info:
        coordinator.plan(["a.com", "b.com"], [("a.com", "b.com"), ("b.com", "a.com")])
    assert "Circular dependency detected" in info.value.message
    assert info.value.details["cycle"][0] == info.value.details["cycle"][-1]


@pytest.mark.parametrize(
    "domains, edges",
    [
        ([], []),
        (["a.com", "a.com"], []),
        (["a.com"], [("a.com", "missing.com")]),
        (["a.com"], [("a.com", "a.com")]),
        (["a.com", "b.com"], [("a.com",)]),
    ],
    ids=["empty", "duplicate", "unknown", "self", "malformed"],
)
def test_invalid_inputs(coordinator, domains, edges):
    with pytest.raises(ValidationError):
        coordinator.plan(domains, edges)
