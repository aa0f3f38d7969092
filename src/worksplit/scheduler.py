from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .models import Job, normalize_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered execution groups for one scheduling pass.

    ``cycle_detected`` is set when some jobs could not be ordered; those jobs
    are emitted together as the final group and listed in ``cyclic_jobs``.
    """

    groups: list[list[str]] = field(default_factory=list)
    cycle_detected: bool = False
    cyclic_jobs: list[str] = field(default_factory=list)

    @property
    def job_count(self) -> int:
        return sum(len(group) for group in self.groups)

    def group_index(self, job_id: str) -> int:
        for idx, group in enumerate(self.groups):
            if job_id in group:
                return idx
        raise KeyError(job_id)


@dataclass
class DependencyGraph:
    """Producer/consumer edges inferred from declared job input and output paths."""

    output_producers: dict[str, str] = field(default_factory=dict)
    dependencies: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, jobs: Iterable[Job]) -> "DependencyGraph":
        job_list = list(jobs)
        graph = cls()
        for job in job_list:
            graph.dependencies.setdefault(job.id, set())
            for output in job.spec.declared_outputs():
                key = normalize_path(output)
                previous = graph.output_producers.get(key)
                if previous is not None and previous != job.id:
                    logger.warning("Output %s declared by both %s and %s; using %s", key, previous, job.id, job.id)
                graph.output_producers[key] = job.id

        for job in job_list:
            for source in job.spec.declared_inputs():
                producer = graph.output_producers.get(normalize_path(source))
                if producer is not None and producer != job.id:
                    graph.dependencies[job.id].add(producer)
        return graph

    def depends_on(self, job_id: str, other_id: str) -> bool:
        return other_id in self.dependencies.get(job_id, set())

    def get_dependencies(self, job_id: str) -> list[str]:
        return sorted(self.dependencies.get(job_id, set()))

    def get_dependents(self, job_id: str) -> list[str]:
        return sorted(dependent for dependent, deps in self.dependencies.items() if job_id in deps)

    def order_groups(self, ready_jobs: Iterable[str]) -> ExecutionPlan:
        """Partition ``ready_jobs`` into groups that are safe to run concurrently.

        A job becomes runnable once each of its dependencies is either placed
        in an earlier group or absent from ``ready_jobs`` (already satisfied by
        a previous run). When jobs remain but none is runnable, the rest is
        emitted as one sorted final group and the plan is flagged as cyclic.
        """
        remaining = set(ready_jobs)
        ready_set = frozenset(remaining)
        placed: set[str] = set()
        groups: list[list[str]] = []

        while remaining:
            runnable = sorted(
                job_id
                for job_id in remaining
                if all(dep in placed or dep not in ready_set for dep in self.dependencies.get(job_id, set()))
            )
            if not runnable:
                cyclic = sorted(remaining)
                logger.warning("Dependency cycle detected among jobs: %s", ", ".join(cyclic))
                groups.append(cyclic)
                return ExecutionPlan(groups=groups, cycle_detected=True, cyclic_jobs=cyclic)
            groups.append(runnable)
            placed.update(runnable)
            remaining.difference_update(runnable)

        return ExecutionPlan(groups=groups)
