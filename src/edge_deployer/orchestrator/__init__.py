"""Orchestrator module for multi-domain deployments.

This module provides the deployment orchestration engine:
- DeploymentOrchestrator: schedules domain pipelines under a concurrency bound
- DeploymentPipeline: per-domain phase state machine
- CrossDomainCoordinator: validates dependencies and builds the execution order
- RollbackCoordinator: compensates a failed domain's completed phases
- StateStore: single writer of portfolio state and the audit log
"""

from .models import (
    Phase,
    PHASE_TRANSITIONS,
    DomainStatus,
    TERMINAL_STATUSES,
    AuditEventType,
    AuditEvent,
    RollbackKind,
    RollbackAction,
    DeploymentErrorInfo,
    DomainState,
    Portfolio,
    DatabaseRecord,
    SecretBundle,
    OrchestrationOptions,
    PhaseContext,
    PhaseResult,
    DomainSummary,
    PortfolioSummary,
)
from .state_store import StateStore
from .coordinator import CrossDomainCoordinator, ExecutionPlan
from .rollback import RollbackCoordinator, RollbackReport
from .pipeline import DeploymentPipeline
from .orchestrator import DeploymentOrchestrator

__all__ = [
    "Phase",
    "PHASE_TRANSITIONS",
    "DomainStatus",
    "TERMINAL_STATUSES",
    "AuditEventType",
    "AuditEvent",
    "RollbackKind",
    "RollbackAction",
    "DeploymentErrorInfo",
    "DomainState",
    "Portfolio",
    "DatabaseRecord",
    "SecretBundle",
    "OrchestrationOptions",
    "PhaseContext",
    "PhaseResult",
    "DomainSummary",
    "PortfolioSummary",
    "StateStore",
    "CrossDomainCoordinator",
    "ExecutionPlan",
    "RollbackCoordinator",
    "RollbackReport",
    "DeploymentPipeline",
    "DeploymentOrchestrator",
]
