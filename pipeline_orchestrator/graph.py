from __future__ import annotations

import heapq
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Set, Tuple, Union

from .errors import CycleDetected, UnknownDependency
from .models import JobDescriptor
from .store import JobDescriptorStore


class DependencyGraph:
    """
    Read-only DAG over job ids.

    Edges point from a job to the jobs that need it (dependency -> dependent).
    The topological order is computed once at construction; ties among
    independent jobs are broken by ascending id.
    """

    def __init__(self, predecessors: Dict[str, Tuple[str, ...]], successors: Dict[str, Tuple[str, ...]]):
        self._preds: Mapping[str, Tuple[str, ...]] = MappingProxyType(dict(predecessors))
        self._succs: Mapping[str, Tuple[str, ...]] = MappingProxyType(dict(successors))
        self._order: Tuple[str, ...] = _topological_order(self._preds, self._succs)
        self._position: Mapping[str, int] = MappingProxyType({jid: i for i, jid in enumerate(self._order)})

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._preds

    def __len__(self) -> int:
        return len(self._preds)

    @property
    def job_ids(self) -> List[str]:
        return sorted(self._preds)

    @property
    def topological_order(self) -> Tuple[str, ...]:
        return self._order

    def predecessors(self, job_id: str) -> Tuple[str, ...]:
        return self._preds[job_id]

    def successors(self, job_id: str) -> Tuple[str, ...]:
        return self._succs[job_id]

    def roots(self) -> List[str]:
        return sorted(jid for jid, preds in self._preds.items() if not preds)

    def descendants(self, job_id: str) -> List[str]:
        """Transitive successors of `job_id`, in topological order."""
        seen: Set[str] = set()
        stack = list(self._succs[job_id])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._succs[node])
        return sorted(seen, key=self._position.__getitem__)

    def levels(self) -> List[List[str]]:
        """
        Group jobs into stages: every job sits one level after its deepest
        dependency, so jobs within a level never depend on each other.
        """
        depth: Dict[str, int] = {}
        for jid in self._order:
            preds = self._preds[jid]
            depth[jid] = 1 + max(depth[p] for p in preds) if preds else 0

        levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for jid in sorted(depth):
            levels[depth[jid]].append(jid)
        return levels


def build_graph(descriptors: Union[JobDescriptorStore, Iterable[JobDescriptor]]) -> DependencyGraph:
    """
    Build and validate the dependency graph.

    Raises:
      - DuplicateJob when two descriptors share an id
      - UnknownDependency when a job needs an id that is not in the set
      - CycleDetected when the needs relation is not acyclic
    """
    store = descriptors if isinstance(descriptors, JobDescriptorStore) else JobDescriptorStore(descriptors)

    preds: Dict[str, Tuple[str, ...]] = {}
    succs: Dict[str, List[str]] = {jid: [] for jid in store.ids()}
    for job in store:
        for dep in job.needs:
            if dep not in store:
                raise UnknownDependency(dep, job.id)
            succs[dep].append(job.id)
        preds[job.id] = job.needs

    _check_acyclic(store.ids(), preds)

    return DependencyGraph(preds, {jid: tuple(sorted(children)) for jid, children in succs.items()})


def _check_acyclic(ids: List[str], preds: Mapping[str, Tuple[str, ...]]) -> None:
    # Iterative DFS along `needs` edges; a GREY node is on the current path.
    WHITE, GREY, BLACK = 0, 1, 2
    color = {jid: WHITE for jid in ids}

    for root in ids:
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path = [root]
        stack = [iter(sorted(preds[root]))]
        while stack:
            for nxt in stack[-1]:
                if color[nxt] == GREY:
                    raise CycleDetected(path[path.index(nxt):])
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    stack.append(iter(sorted(preds[nxt])))
                    break
            else:
                color[path.pop()] = BLACK
                stack.pop()


def _topological_order(
    preds: Mapping[str, Tuple[str, ...]],
    succs: Mapping[str, Tuple[str, ...]],
) -> Tuple[str, ...]:
    indeg = {jid: len(p) for jid, p in preds.items()}
    heap = [jid for jid, d in indeg.items() if d == 0]
    heapq.heapify(heap)

    order: List[str] = []
    while heap:
        node = heapq.heappop(heap)
        order.append(node)
        for child in succs[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, child)

    if len(order) != len(preds):
        stuck = sorted(jid for jid, d in indeg.items() if d > 0)
        raise CycleDetected(stuck)
    return tuple(order)
