from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Set, Tuple

from .errors import CycleError
from .model import Pipeline

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass(frozen=True)
class ExecutionGraph:
    """
    Read-only DAG over job indices.

    deps[i]       every job i waits for (explicit needs + implicit stage edges)
    explicit[i]   the subset of deps[i] that came from `needs`
    dependents[i] jobs that wait for i, in (stage, declaration) order
    order         topological hint, (stage, declaration) tie-break
    closure[i]    transitive dependencies of i
    unreachable   jobs that can never run because a required ancestor is `when: never`
    """
    pipeline: Pipeline
    deps: Tuple[FrozenSet[int], ...]
    explicit: Tuple[FrozenSet[int], ...]
    dependents: Tuple[Tuple[int, ...], ...]
    order: Tuple[int, ...]
    closure: Tuple[FrozenSet[int], ...]
    unreachable: FrozenSet[int]

    def __len__(self) -> int:
        return len(self.pipeline.jobs)

    def order_names(self) -> List[str]:
        return self.pipeline.names(self.order)

    def levels(self) -> List[List[str]]:
        """
        Group jobs into topological levels. Each level can run in parallel
        once the previous levels are done.
        """
        depth: Dict[int, int] = {}
        for i in self.order:
            depth[i] = 1 + max((depth[d] for d in self.deps[i]), default=-1)
        levels: List[List[str]] = []
        for i in self.order:
            while len(levels) <= depth[i]:
                levels.append([])
            levels[depth[i]].append(self.pipeline.jobs[i].name)
        return levels


def _edges(pipeline: Pipeline) -> Tuple[List[Set[int]], List[Set[int]]]:
    by_stage: Dict[int, List[int]] = {}
    for job in pipeline.jobs:
        by_stage.setdefault(job.stage_index, []).append(job.index)

    deps: List[Set[int]] = []
    explicit: List[Set[int]] = []
    for job in pipeline.jobs:
        if job.needs is not None:
            deps.append(set(job.needs))
            explicit.append(set(job.needs))
            continue
        # no explicit needs: wait for the nearest earlier stage that has jobs
        implicit: Set[int] = set()
        for s in range(job.stage_index - 1, -1, -1):
            if by_stage.get(s):
                implicit = set(by_stage[s])
                break
        deps.append(implicit)
        explicit.append(set())
    return deps, explicit


def _find_cycle(pipeline: Pipeline, deps: List[Set[int]]) -> None:
    """Three-colour DFS; raises CycleError with the full path on a back-edge."""
    n = len(pipeline.jobs)
    color = [WHITE] * n

    for root in range(n):
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        path = [root]
        stack = [iter(sorted(deps[root]))]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path[-1]] = BLACK
                path.pop()
                stack.pop()
                continue
            if color[nxt] == GRAY:
                cycle = path[path.index(nxt):] + [nxt]
                raise CycleError(pipeline.names(cycle))
            if color[nxt] == WHITE:
                color[nxt] = GRAY
                path.append(nxt)
                stack.append(iter(sorted(deps[nxt])))


def _topo_order(pipeline: Pipeline, deps: List[Set[int]], dependents: List[List[int]]) -> List[int]:
    indeg = [len(d) for d in deps]
    heap = [pipeline.jobs[i].sort_key for i, d in enumerate(indeg) if d == 0]
    heapq.heapify(heap)

    order: List[int] = []
    while heap:
        _, i = heapq.heappop(heap)
        order.append(i)
        for child in dependents[i]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, pipeline.jobs[child].sort_key)

    if len(order) != len(deps):
        # _find_cycle runs first, so this means the graph was built wrong
        stuck = sorted(pipeline.names(i for i, d in enumerate(indeg) if d > 0))
        raise RuntimeError(f"Unresolved dependencies after cycle check. Stuck jobs: {stuck}")
    return order


def resolve(pipeline: Pipeline) -> ExecutionGraph:
    """
    Build the execution graph for a pipeline.

    Raises CycleError naming every job on the cycle. Never runs anything.
    """
    deps, explicit = _edges(pipeline)
    _find_cycle(pipeline, deps)

    dependents: List[List[int]] = [[] for _ in pipeline.jobs]
    for i, ds in enumerate(deps):
        for d in ds:
            dependents[d].append(i)
    for lst in dependents:
        lst.sort(key=lambda i: pipeline.jobs[i].sort_key)

    order = _topo_order(pipeline, deps, dependents)

    closure: List[FrozenSet[int]] = [frozenset()] * len(deps)
    blocked = [False] * len(deps)
    for i in order:
        acc: Set[int] = set()
        for d in deps[i]:
            acc.add(d)
            acc |= closure[d]
        closure[i] = frozenset(acc)

        job = pipeline.jobs[i]
        if job.when == "never":
            blocked[i] = True
        elif job.when != "always":
            blocked[i] = any(blocked[d] for d in explicit[i])

    unreachable = frozenset(
        i for i in range(len(deps)) if blocked[i] and pipeline.jobs[i].when != "never"
    )

    return ExecutionGraph(
        pipeline=pipeline,
        deps=tuple(frozenset(d) for d in deps),
        explicit=tuple(frozenset(e) for e in explicit),
        dependents=tuple(tuple(d) for d in dependents),
        order=tuple(order),
        closure=tuple(closure),
        unreachable=unreachable,
    )
