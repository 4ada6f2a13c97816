# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import GraphError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must succeed BEFORE this job)

    Raises GraphError for duplicate names, unknown dependencies and cycles,
    so a malformed run is rejected before anything executes.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise GraphError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set:
                raise GraphError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if dep == job.name:
                raise GraphError(f"Job '{job.name}' needs itself")
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    # validates acyclicity
    topo_levels(adj, indeg, names)
    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: List[str],
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Within a stage, jobs keep declaration order.
    """
    rank = {n: i for i, n in enumerate(order)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0], key=rank.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        unlocked: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.append(child)

        q.extend(sorted(unlocked, key=rank.__getitem__))
        levels.append(level)

    if processed != len(indeg):
        remaining = [n for n in order if indeg[n] > 0]
        raise GraphError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def plan(jobs: List[Job]) -> List[List[str]]:
    """Stages of a validated graph, for display."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg, [j.name for j in jobs])


def execution_order(jobs: List[Job]) -> List[str]:
    """A single total order respecting every `needs` edge."""
    return [name for level in plan(jobs) for name in level]


def ancestors(jobs: List[Job]) -> Dict[str, Set[str]]:
    """Map each job to the set of jobs it transitively depends on."""
    build_dag(jobs)
    needs = {j.name: list(j.needs or []) for j in jobs}
    out: Dict[str, Set[str]] = {}

    def visit(name: str) -> Set[str]:
        if name in out:
            return out[name]
        acc: Set[str] = set()
        for dep in needs[name]:
            acc.add(dep)
            acc |= visit(dep)
        out[name] = acc
        return acc

    for j in jobs:
        visit(j.name)
    return out


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """Every job reachable from `name` via `needs` edges."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adj.get(node, ()))
    return seen
