"""Cross-domain coordinator: validates dependencies and builds the execution order."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from ..errors import ValidationError

logger = logging.getLogger(__name__)

# (dependent, dependency): dependent 必须等 dependency 完成后才能开始
DependencyEdge = Tuple[str, str]


@dataclass
class ExecutionPlan:
    """Validated schedule for one run."""
    order: List[str]
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)
    dependents: Dict[str, Set[str]] = field(default_factory=dict)

    def ready(self, domain: str, completed: Iterable[str]) -> bool:
        return self.dependencies[domain] <= set(completed)


class CrossDomainCoordinator:
    """在任何流水线启动之前校验域名列表和依赖关系"""

    def plan(
        self,
        domains: Sequence[str],
        dependency_edges: Iterable[DependencyEdge] = (),
    ) -> ExecutionPlan:
        """Validate ``domains``/``dependency_edges`` and return a stable order.

        Raises:
            ValidationError: empty or duplicate domains, unknown or self
                referencing edges, or a dependency cycle.
        """
        domains = list(domains)
        if not domains:
            raise ValidationError("No domains specified")

        duplicates = sorted(d for d, n in Counter(domains).items() if n > 1)
        if duplicates:
            raise ValidationError(f"Duplicate domains: {', '.join(duplicates)}", {"duplicates": duplicates})

        known = set(domains)
        dependencies: Dict[str, Set[str]] = {d: set() for d in domains}
        dependents: Dict[str, Set[str]] = {d: set() for d in domains}
        for edge in dependency_edges:
            if len(edge) != 2:
                raise ValidationError(f"Malformed dependency edge: {edge!r}")
            dependent, dependency = edge
            unknown = [d for d in (dependent, dependency) if d not in known]
            if unknown:
                raise ValidationError(
                    f"Dependency edge {dependent} -> {dependency} references unknown domain(s): "
                    f"{', '.join(unknown)}",
                    {"edge": [dependent, dependency]},
                )
            if dependent == dependency:
                raise ValidationError(f"Domain {dependent} cannot depend on itself", {"domain": dependent})
            dependencies[dependent].add(dependency)
            dependents[dependency].add(dependent)

        self._check_cycles(domains, dependencies)
        order = self._order(domains, dependencies)
        logger.debug(f"Execution order: {' -> '.join(order)}")
        return ExecutionPlan(order=order, dependencies=dependencies, dependents=dependents)

    @staticmethod
    def _check_cycles(domains: List[str], dependencies: Dict[str, Set[str]]) -> None:
        visited: Set[str] = set()
        visiting: Set[str] = set()
        path: List[str] = []

        def visit(domain: str) -> None:
            if domain in visiting:
                cycle = path[path.index(domain):] + [domain]
                raise ValidationError(
                    f"Circular dependency detected: {' -> '.join(cycle)}", {"cycle": cycle}
                )
            if domain in visited:
                return
            visiting.add(domain)
            path.append(domain)
            for dependency in sorted(dependencies[domain], key=domains.index):
                visit(dependency)
            path.pop()
            visiting.discard(domain)
            visited.add(domain)

        for domain in domains:
            visit(domain)

    @staticmethod
    def _order(domains: List[str], dependencies: Dict[str, Set[str]]) -> List[str]:
        # 稳定的拓扑排序：依赖优先，其余保持输入顺序
        order: List[str] = []
        placed: Set[str] = set()
        while len(order) < len(domains):
            for domain in domains:
                if domain not in placed and dependencies[domain] <= placed:
                    order.append(domain)
                    placed.add(domain)
                    break
        return order
