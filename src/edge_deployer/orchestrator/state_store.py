"""State & audit store: the single writer of portfolio state.

Every pipeline, manager and the rollback coordinator goes through this store
to change a DomainState or append an AuditEvent. Writes are serialized with a
re-entrant lock; reads hand out deep copies so callers can never mutate the
live state.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from ..errors import StateStoreClosedError, StateTransitionError, ValidationError
from .models import (
    PHASE_TRANSITIONS,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    AuditEvent,
    AuditEventType,
    DeploymentErrorInfo,
    DomainState,
    DomainStatus,
    DomainSummary,
    Phase,
    Portfolio,
    PortfolioSummary,
    RollbackAction,
    utc_now,
)

logger = logging.getLogger(__name__)


def _timestamp_token() -> str:
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z").replace(":", "-").replace(".", "-")


def generate_orchestration_id() -> str:
    """orchestration-<utc timestamp>-<12 hex>"""
    return f"orchestration-{_timestamp_token()}-{os.urandom(6).hex()}"


def generate_deployment_id(domain: str) -> str:
    """deploy-<domain>-<timestamp>-<8 hex>"""
    return f"deploy-{domain}-{_timestamp_token()}-{os.urandom(4).hex()}"


class StateStore:
    """
    组合状态与审计日志存储

    - 所有写操作通过 RLock 串行化
    - 汇总每次都从当前 DomainState 计算，不做缓存
    - 持久化失败只记录警告，内存状态始终是权威数据
    """

    def __init__(
        self,
        environment: str,
        concurrency_limit: int = 3,
        dry_run: bool = False,
        persist: bool = False,
        state_dir: Optional[Union[str, Path]] = None,
        orchestration_id: Optional[str] = None,
    ) -> None:
        self._lock = threading.RLock()
        self.portfolio = Portfolio(
            orchestration_id=orchestration_id or generate_orchestration_id(),
            environment=environment,
            domains=[],
            concurrency_limit=concurrency_limit,
            dry_run=dry_run,
        )
        self.persist = persist and not dry_run
        self.state_dir = Path(state_dir) if state_dir else None
        self.peak_in_progress = 0
        self._closed = False
        self._rollback_taken: Set[str] = set()

    @property
    def orchestration_id(self) -> str:
        return self.portfolio.orchestration_id

    @property
    def environment(self) -> str:
        return self.portfolio.environment

    @property
    def state_file(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / f"{self.orchestration_id}.json"

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize_domains(self, domains: List[str]) -> None:
        """Create one PENDING DomainState per domain."""
        with self._lock:
            self._ensure_open()
            for domain in domains:
                if domain in self.portfolio.domain_states:
                    raise ValidationError(f"Duplicate domain: {domain}")
                self.portfolio.domain_states[domain] = DomainState(
                    deployment_id=generate_deployment_id(domain),
                    domain=domain,
                )
                self.portfolio.domains.append(domain)
            self._append(
                AuditEventType.PORTFOLIO_INITIALIZED,
                None,
                {
                    "environment": self.portfolio.environment,
                    "domains": list(domains),
                    "concurrency_limit": self.portfolio.concurrency_limit,
                    "dry_run": self.portfolio.dry_run,
                },
            )

    def finalize(self) -> PortfolioSummary:
        """Close the portfolio once every domain is terminal."""
        with self._lock:
            self._ensure_open()
            pending = [d for d, s in self.portfolio.domain_states.items() if s.status not in TERMINAL_STATUSES]
            if pending:
                raise StateTransitionError(
                    f"Cannot finalize portfolio: domains not terminal: {', '.join(pending)}"
                )
            self.portfolio.ended_at = utc_now()
            summary = self._summary()
            self._append(
                AuditEventType.PORTFOLIO_COMPLETED,
                None,
                {
                    "total_domains": summary.total_domains,
                    "completed_domains": summary.completed_domains,
                    "failed_domains": summary.failed_domains,
                    "rolled_back_domains": summary.rolled_back_domains,
                },
            )
            self._closed = True
            return self._summary()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_transition(
        self,
        domain: str,
        from_phase: Phase,
        to_phase: Phase,
        status: DomainStatus,
    ) -> None:
        """Move a domain along the phase/status state machine.

        Raises:
            StateTransitionError: unknown domain, stale ``from_phase``, a phase
                skip or backwards move, or a forbidden status change.
        """
        with self._lock:
            self._ensure_open()
            state = self._state(domain)
            if state.phase != from_phase:
                raise StateTransitionError(
                    f"{domain}: expected phase {from_phase.value}, current phase is {state.phase.value}",
                    {"domain": domain, "expected": from_phase.value, "actual": state.phase.value},
                )
            if to_phase != from_phase and PHASE_TRANSITIONS[from_phase] != to_phase:
                raise StateTransitionError(
                    f"{domain}: illegal phase transition {from_phase.value} -> {to_phase.value}",
                    {"domain": domain, "from": from_phase.value, "to": to_phase.value},
                )
            self._set_status(state, status)
            state.phase = to_phase
            logger.debug(f"{domain}: {from_phase.value} -> {to_phase.value} [{status.value}]")
            self._save()

    def append_audit(
        self,
        event_type: AuditEventType,
        domain: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        with self._lock:
            self._ensure_open()
            if domain is not None:
                self._state(domain)
            return self._append(event_type, domain, details or {})

    def add_rollback_action(self, domain: str, action: RollbackAction) -> None:
        with self._lock:
            self._ensure_open()
            self._state(domain).rollback_actions.append(copy.deepcopy(action))
            self._save()

    def update_metadata(self, domain: str, values: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_open()
            self._state(domain).metadata.update(copy.deepcopy(values))
            self._save()

    def add_warning(self, domain: str, message: str) -> None:
        with self._lock:
            self._ensure_open()
            self._state(domain).warnings.append(message)
            self._save()

    def mark_failed(self, domain: str, error: DeploymentErrorInfo) -> None:
        with self._lock:
            self._ensure_open()
            state = self._state(domain)
            self._set_status(state, DomainStatus.FAILED)
            state.error = copy.deepcopy(error)
            self._save()

    def mark_rolled_back(self, domain: str) -> None:
        with self._lock:
            self._ensure_open()
            self._set_status(self._state(domain), DomainStatus.ROLLED_BACK)
            self._save()

    def take_rollback_actions(self, domain: str) -> List[RollbackAction]:
        """Hand the recorded actions to the rollback coordinator exactly once.

        The actions stay on the DomainState for reporting; a second call
        returns an empty list.
        """
        with self._lock:
            self._ensure_open()
            state = self._state(domain)
            if domain in self._rollback_taken:
                return []
            self._rollback_taken.add(domain)
            return copy.deepcopy(state.rollback_actions)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_domain_state(self, domain: str) -> DomainState:
        with self._lock:
            return copy.deepcopy(self._state(domain))

    def get_portfolio_summary(self) -> PortfolioSummary:
        with self._lock:
            return self._summary()

    def get_audit_log(
        self,
        event_type: Optional[AuditEventType] = None,
        domain: Optional[str] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = [
                e for e in self.portfolio.audit_log
                if (event_type is None or e.event_type == event_type)
                and (domain is None or e.domain == domain)
            ]
            return copy.deepcopy(events)

    def export_audit_log(self, orchestration_id: str) -> List[AuditEvent]:
        if orchestration_id != self.orchestration_id:
            raise ValidationError(f"Unknown orchestration id: {orchestration_id}")
        return self.get_audit_log()

    # ------------------------------------------------------------------
    # Persisted documents
    # ------------------------------------------------------------------

    @staticmethod
    def load_audit_log(state_dir: Union[str, Path], orchestration_id: str) -> List[AuditEvent]:
        """Read the audit log of an earlier run from its persisted document."""
        path = Path(state_dir) / f"{orchestration_id}.json"
        if not path.is_file():
            raise FileNotFoundError(f"No persisted state for {orchestration_id} in {state_dir}")
        with path.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
        return [AuditEvent.from_dict(item) for item in document.get("audit_log", [])]

    # ------------------------------------------------------------------
    # internals (callers hold the lock)
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise StateStoreClosedError(
                f"Portfolio {self.orchestration_id} is finalized; no further writes allowed"
            )

    def _state(self, domain: str) -> DomainState:
        try:
            return self.portfolio.domain_states[domain]
        except KeyError:
            raise StateTransitionError(f"Unknown domain: {domain}", {"domain": domain}) from None

    def _set_status(self, state: DomainState, status: DomainStatus) -> None:
        if status == state.status:
            return
        if status not in STATUS_TRANSITIONS[state.status]:
            raise StateTransitionError(
                f"{state.domain}: illegal status transition {state.status.value} -> {status.value}",
                {"domain": state.domain, "from": state.status.value, "to": status.value},
            )
        now = utc_now()
        if status == DomainStatus.IN_PROGRESS:
            state.started_at = now
        if status in TERMINAL_STATUSES:
            state.ended_at = now
        state.status = status

        in_progress = sum(
            1 for s in self.portfolio.domain_states.values() if s.status == DomainStatus.IN_PROGRESS
        )
        self.peak_in_progress = max(self.peak_in_progress, in_progress)

    def _append(
        self,
        event_type: AuditEventType,
        domain: Optional[str],
        details: Dict[str, Any],
    ) -> AuditEvent:
        timestamp = utc_now()
        if self.portfolio.audit_log:
            # 时间戳单调不减
            timestamp = max(timestamp, self.portfolio.audit_log[-1].timestamp)
        event = AuditEvent(
            sequence=len(self.portfolio.audit_log) + 1,
            timestamp=timestamp,
            orchestration_id=self.orchestration_id,
            event_type=event_type,
            domain=domain,
            details=copy.deepcopy(details),
        )
        self.portfolio.audit_log.append(event)
        self._save()
        return event

    def _summary(self) -> PortfolioSummary:
        states = [self.portfolio.domain_states[d] for d in self.portfolio.domains]
        per_domain = [
            DomainSummary(
                domain=s.domain,
                status=s.status,
                phase=s.phase,
                error=copy.deepcopy(s.error),
                warnings=list(s.warnings),
                rollback_actions=[a.to_dict() for a in s.rollback_actions],
                unresolved_rollback_actions=copy.deepcopy(
                    s.metadata.get("unresolved_rollback_actions", [])
                ),
                deployment_url=s.metadata.get("deployment_url"),
            )
            for s in states
        ]

        def count(*statuses: DomainStatus) -> int:
            return sum(1 for s in states if s.status in statuses)

        return PortfolioSummary(
            orchestration_id=self.orchestration_id,
            environment=self.portfolio.environment,
            total_domains=len(states),
            completed_domains=count(DomainStatus.COMPLETED),
            failed_domains=count(DomainStatus.FAILED, DomainStatus.ROLLED_BACK),
            rolled_back_domains=count(DomainStatus.ROLLED_BACK),
            in_progress_domains=count(DomainStatus.IN_PROGRESS),
            peak_in_progress=self.peak_in_progress,
            dry_run=self.portfolio.dry_run,
            started_at=self.portfolio.started_at,
            ended_at=self.portfolio.ended_at,
            per_domain=per_domain,
        )

    def _save(self) -> None:
        """保存组合状态到文件（失败只记录警告）"""
        path = self.state_file
        if not self.persist or path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.portfolio.to_dict(), f, indent=2, ensure_ascii=False)
        except OSError as exc:
            logger.warning(f"⚠️ Failed to persist state to {path}: {exc}")
