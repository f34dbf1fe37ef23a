"""Data models for the orchestrator module."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..errors import DeploymentError, error_kind


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Phase(Enum):
    """部署阶段（按顺序）"""
    PENDING = "pending"
    VALIDATION = "validation"
    INITIALIZATION = "initialization"
    DATABASE = "database"
    SECRETS = "secrets"
    DEPLOYMENT = "deployment"
    POST_VALIDATION = "post_validation"
    COMPLETED = "completed"


# 显式的阶段转换表：每个阶段只能前进到它的后继阶段
PHASE_TRANSITIONS: Dict[Phase, Optional[Phase]] = {
    Phase.PENDING: Phase.VALIDATION,
    Phase.VALIDATION: Phase.INITIALIZATION,
    Phase.INITIALIZATION: Phase.DATABASE,
    Phase.DATABASE: Phase.SECRETS,
    Phase.SECRETS: Phase.DEPLOYMENT,
    Phase.DEPLOYMENT: Phase.POST_VALIDATION,
    Phase.POST_VALIDATION: Phase.COMPLETED,
    Phase.COMPLETED: None,
}

# 实际执行工作的阶段
WORK_PHASES: List[Phase] = [
    Phase.VALIDATION,
    Phase.INITIALIZATION,
    Phase.DATABASE,
    Phase.SECRETS,
    Phase.DEPLOYMENT,
    Phase.POST_VALIDATION,
]


class DomainStatus(Enum):
    """域名部署状态"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset(
    {DomainStatus.COMPLETED, DomainStatus.FAILED, DomainStatus.ROLLED_BACK}
)

STATUS_TRANSITIONS: Dict[DomainStatus, Set[DomainStatus]] = {
    DomainStatus.PENDING: {DomainStatus.IN_PROGRESS, DomainStatus.FAILED},
    DomainStatus.IN_PROGRESS: {DomainStatus.COMPLETED, DomainStatus.FAILED},
    DomainStatus.COMPLETED: set(),
    DomainStatus.FAILED: {DomainStatus.ROLLED_BACK},
    DomainStatus.ROLLED_BACK: set(),
}


class AuditEventType(Enum):
    """审计事件类型"""
    PORTFOLIO_INITIALIZED = "PORTFOLIO_INITIALIZED"
    PORTFOLIO_COMPLETED = "PORTFOLIO_COMPLETED"
    DOMAIN_STARTED = "DOMAIN_STARTED"
    PHASE_STARTED = "PHASE_STARTED"
    PHASE_COMPLETED = "PHASE_COMPLETED"
    PHASE_FAILED = "PHASE_FAILED"
    PHASE_WARNING = "PHASE_WARNING"
    RESOURCE_CREATED = "RESOURCE_CREATED"
    RESOURCE_REUSED = "RESOURCE_REUSED"
    RESOURCE_RETRY = "RESOURCE_RETRY"
    RESOURCE_WARNING = "RESOURCE_WARNING"
    DEPENDENCY_FAILED = "DEPENDENCY_FAILED"
    RUN_CANCELLED = "RUN_CANCELLED"
    ROLLBACK_STARTED = "ROLLBACK_STARTED"
    ROLLBACK_EXECUTED = "ROLLBACK_EXECUTED"
    ROLLBACK_ACTION_FAILED = "ROLLBACK_ACTION_FAILED"
    ROLLBACK_COMPLETED = "ROLLBACK_COMPLETED"
    HEALTH_CHECK_PASSED = "HEALTH_CHECK_PASSED"
    HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"


@dataclass(frozen=True)
class AuditEvent:
    """不可变的审计事件（只能追加）"""
    sequence: int
    timestamp: datetime
    orchestration_id: str
    event_type: AuditEventType
    domain: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "orchestration_id": self.orchestration_id,
            "event_type": self.event_type.value,
            "domain": self.domain,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            sequence=data.get("sequence", 0),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            orchestration_id=data.get("orchestration_id", ""),
            event_type=AuditEventType(data["event_type"]),
            domain=data.get("domain"),
            details=data.get("details", {}),
        )


class RollbackKind(Enum):
    """回滚动作类型"""
    DELETE_DATABASE = "DELETE_DATABASE"
    REVOKE_SECRET = "REVOKE_SECRET"
    ROLLBACK_DEPLOYMENT = "ROLLBACK_DEPLOYMENT"
    NOOP = "NOOP"


@dataclass
class RollbackAction:
    """撤销某个阶段副作用所需的信息"""
    domain: str
    phase: Phase
    kind: RollbackKind
    payload: Dict[str, Any] = field(default_factory=dict)
    action_id: str = field(default_factory=lambda: os.urandom(4).hex())
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "domain": self.domain,
            "phase": self.phase.value,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeploymentErrorInfo:
    """结构化错误信息（记录在 DomainState 上）"""
    kind: str
    message: str
    phase: Optional[Phase] = None
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, phase: Optional[Phase] = None) -> "DeploymentErrorInfo":
        if isinstance(exc, DeploymentError):
            return cls(
                kind=error_kind(exc),
                message=exc.message,
                phase=phase,
                retryable=exc.retryable,
                details=dict(exc.details),
            )
        return cls(kind=error_kind(exc), message=str(exc) or type(exc).__name__, phase=phase)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "phase": self.phase.value if self.phase else None,
            "retryable": self.retryable,
            "details": self.details,
        }


@dataclass
class DomainState:
    """单个域名在一次运行中的状态"""
    deployment_id: str
    domain: str
    phase: Phase = Phase.PENDING
    status: DomainStatus = DomainStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[DeploymentErrorInfo] = None
    rollback_actions: List[RollbackAction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # 资源标识：数据库名/ID、密钥包摘要、部署 URL、未解决的回滚动作等
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "domain": self.domain,
            "phase": self.phase.value,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error": self.error.to_dict() if self.error else None,
            "rollback_actions": [a.to_dict() for a in self.rollback_actions],
            "warnings": list(self.warnings),
            "metadata": self.metadata,
        }


@dataclass
class Portfolio:
    """一次编排运行的全部域名及其状态"""
    orchestration_id: str
    environment: str
    domains: List[str]
    concurrency_limit: int
    dry_run: bool = False
    domain_states: Dict[str, DomainState] = field(default_factory=dict)
    audit_log: List[AuditEvent] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "environment": self.environment,
            "domains": list(self.domains),
            "concurrency_limit": self.concurrency_limit,
            "dry_run": self.dry_run,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "domain_states": {d: s.to_dict() for d, s in self.domain_states.items()},
            "audit_log": [e.to_dict() for e in self.audit_log],
        }


@dataclass
class DatabaseRecord:
    """数据库资源记录"""
    name: str
    database_id: Optional[str] = None
    created: bool = False
    migrations_applied: bool = False
    migration_warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "database_id": self.database_id,
            "created": self.created,
            "migrations_applied": self.migrations_applied,
            "migration_warning": self.migration_warning,
        }


@dataclass
class SecretBundle:
    """密钥包（按 domain + environment 归属）"""
    domain: str
    environment: str
    worker_name: Optional[str] = None        # 推送目标 worker（每个域名独立）
    values: Dict[str, str] = field(default_factory=dict)
    reused: int = 0
    generated: int = 0
    distribution_formats: Set[str] = field(default_factory=set)
    distribution_files: Dict[str, str] = field(default_factory=dict)
    bundle_path: Optional[str] = None
    # 本次运行新生成的密钥名（回滚时只撤销这些）
    generated_names: List[str] = field(default_factory=list)
    pushed: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        """不含密钥值的摘要（可以安全地写入日志和元数据）"""
        return {
            "names": sorted(self.values),
            "reused": self.reused,
            "generated": self.generated,
            "distribution_formats": sorted(self.distribution_formats),
            "distribution_files": dict(self.distribution_files),
            "worker_name": self.worker_name,
            "bundle_path": self.bundle_path,
            "pushed": list(self.pushed),
        }


@dataclass
class OrchestrationOptions:
    """一次运行的选项

    - reuse_existing: 复用已有密钥，只生成缺失项
    - rotate_all: 强制重新生成全部密钥
    - dry_run: 不调用任何会修改外部状态的执行器操作
    - concurrency_limit: 同时执行的域名流水线上限
    - skip_health_check: 跳过 POST_VALIDATION 健康检查
    - auto_rollback: 失败后自动执行补偿动作
    - run_timeout: 整个运行的超时（秒）
    """
    reuse_existing: bool = True
    rotate_all: bool = False
    dry_run: bool = False
    concurrency_limit: int = 3
    skip_health_check: bool = False
    auto_rollback: bool = True
    run_timeout: Optional[float] = None


@dataclass
class PhaseContext:
    """阶段处理函数的输入"""
    domain: str
    environment: str
    options: OrchestrationOptions
    deployment_id: str
    # 前置阶段的产出（按阶段累积）
    outputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PhaseResult:
    """阶段执行结果"""
    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    rollback_actions: List[RollbackAction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @classmethod
    def succeeded(
        cls,
        outputs: Optional[Dict[str, Any]] = None,
        rollback_actions: Optional[List[RollbackAction]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "PhaseResult":
        """创建成功结果"""
        return cls(
            success=True,
            outputs=outputs or {},
            rollback_actions=rollback_actions or [],
            warnings=warnings or [],
        )

    @classmethod
    def failed(cls, error: BaseException) -> "PhaseResult":
        """创建失败结果"""
        return cls(success=False, error=error)


@dataclass
class DomainSummary:
    domain: str
    status: DomainStatus
    phase: Phase
    error: Optional[DeploymentErrorInfo] = None
    warnings: List[str] = field(default_factory=list)
    rollback_actions: List[Dict[str, Any]] = field(default_factory=list)
    unresolved_rollback_actions: List[Dict[str, Any]] = field(default_factory=list)
    deployment_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "status": self.status.value,
            "phase": self.phase.value,
            "error": self.error.to_dict() if self.error else None,
            "warnings": list(self.warnings),
            "rollback_actions": list(self.rollback_actions),
            "unresolved_rollback_actions": list(self.unresolved_rollback_actions),
            "deployment_url": self.deployment_url,
        }


@dataclass
class PortfolioSummary:
    """组合汇总（每次都从当前 DomainState 计算）"""
    orchestration_id: str
    environment: str
    total_domains: int
    completed_domains: int
    failed_domains: int
    rolled_back_domains: int
    in_progress_domains: int
    peak_in_progress: int
    dry_run: bool
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    per_domain: List[DomainSummary] = field(default_factory=list)

    @property
    def all_terminal(self) -> bool:
        return all(d.status in TERMINAL_STATUSES for d in self.per_domain)

    @property
    def success(self) -> bool:
        return self.completed_domains == self.total_domains

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def get(self, domain: str) -> Optional[DomainSummary]:
        for item in self.per_domain:
            if item.domain == domain:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "environment": self.environment,
            "total_domains": self.total_domains,
            "completed_domains": self.completed_domains,
            "failed_domains": self.failed_domains,
            "rolled_back_domains": self.rolled_back_domains,
            "in_progress_domains": self.in_progress_domains,
            "peak_in_progress": self.peak_in_progress,
            "dry_run": self.dry_run,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "per_domain": [d.to_dict() for d in self.per_domain],
        }
