# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .errors import ConfigurationError
from .model import Job


def _index_producers(jobs: List[Job]) -> Dict[str, str]:
    producers: Dict[str, str] = {}
    for job in jobs:
        for artifact in job.output_names:
            if artifact in producers:
                raise ConfigurationError(
                    f"Artifact '{artifact}' has more than one producer",
                    details={"producers": sorted([producers[artifact], job.name])},
                )
            producers[artifact] = job.name
    return producers


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int], Dict[str, str]]:
    """
    Build a DAG from Job objects.

    Edges are derived: producer -> consumer for every input a job declares.

    Returns:
      adj:       job -> jobs that consume one of its outputs
      indeg:     number of distinct producers each job waits on
      producers: artifact name -> producing job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    producers = _index_producers(jobs)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for inp in job.inputs:
            producer = producers.get(inp.artifact)
            if producer is None:
                if inp.optional:
                    continue
                raise ConfigurationError(
                    f"Job '{job.name}' needs artifact '{inp.artifact}' which no job produces",
                    job=job.name,
                    details={"known_artifacts": sorted(producers)},
                )
            # Edge producer -> job (producer must run BEFORE job)
            if job.name not in adj[producer]:
                adj[producer].add(job.name)
                indeg[job.name] += 1

    return adj, indeg, producers


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigurationError(
            f"Pipeline graph has a cycle. Stuck jobs: {remaining}",
            details={"stuck": remaining},
        )

    return levels


class PipelineGraph:
    """
    The static job set plus the edges implied by artifact matching.

    Validated once at construction; shared read-only by every Run.
    """

    def __init__(self, jobs: Iterable[Job]):
        self._jobs: Dict[str, Job] = {}
        job_list = list(jobs)
        self._adj, self._indeg, self._producers = build_dag(job_list)
        self._levels = topo_levels(self._adj, self._indeg)
        for job in job_list:
            self._jobs[job.name] = job

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def __getitem__(self, name: str) -> Job:
        return self._jobs[name]

    @property
    def jobs(self) -> List[Job]:
        return [self._jobs[n] for n in self.order()]

    def producers_of(self, name: str) -> Dict[str, str]:
        """artifact -> producing job, for every input of `name` that has a producer."""
        out: Dict[str, str] = {}
        for inp in self._jobs[name].inputs:
            producer = self._producers.get(inp.artifact)
            if producer is not None:
                out[inp.artifact] = producer
        return out

    def upstream(self, name: str) -> Set[str]:
        return set(self.producers_of(name).values())

    def dependents(self, name: str) -> Set[str]:
        return set(self._adj[name])

    def descendants(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        q = deque(sorted(self._adj[name]))
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(sorted(self._adj[node]))
        return seen

    def levels(self) -> List[List[str]]:
        return [list(level) for level in self._levels]

    def order(self) -> List[str]:
        return [n for level in self._levels for n in level]
