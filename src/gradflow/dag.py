# dag.py
from __future__ import annotations

from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import WorkflowError
from .model import Job

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowError([f"Duplicate job names found: {dupes}"])

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                raise WorkflowError([
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                ])
            # edge need -> job.name
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


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

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise WorkflowError([f"Dependency cycle detected. Stuck jobs: {remaining}"])

    return levels


def find_cycle(jobs: Iterable[Job]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a path (first node repeated at the end),
    or None if the `needs` graph is acyclic. Unknown needs are ignored.
    """
    needs = {j.name: [n for n in j.needs] for j in jobs}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        stack.append(node)
        for nxt in needs[node]:
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                return stack[stack.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                found = visit(nxt)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for name in needs:
        if color[name] == WHITE:
            found = visit(name)
            if found:
                # needs point backwards in time; report in execution order
                return list(reversed(found))
    return None


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that transitively need `name`."""
    seen: Set[str] = set()
    q = deque(adj.get(name, ()))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        q.extend(adj.get(node, ()))
    return seen


def ancestors(jobs: Iterable[Job], name: str) -> Set[str]:
    """All jobs `name` transitively needs."""
    needs = {j.name: list(j.needs) for j in jobs}
    seen: Set[str] = set()
    q = deque(needs.get(name, ()))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        q.extend(needs.get(node, ()))
    return seen


def can_run_concurrently(jobs: List[Job], a: str, b: str) -> bool:
    """True if there is no dependency path between jobs `a` and `b`."""
    if a == b:
        return False
    return a not in ancestors(jobs, b) and b not in ancestors(jobs, a)


def schedule(
    jobs: List[Job],
    run_fn: Callable[[Job], None],
    *,
    max_workers: int | None = None,
    fail_fast: bool = False,
    tier_of: Callable[[Job], Optional[str]] | None = None,
    tier_limits: Dict[str, int] | None = None,
    on_start: Callable[[Job], None] | None = None,
    on_finish: Callable[[Job, str, Optional[BaseException]], None] | None = None,
    on_skip: Callable[[Job, str], None] | None = None,
) -> Dict[str, str]:
    """
    Run jobs in dependency order on a thread pool.

    - A job is submitted once every job in its `needs` finished with OK.
    - A failed job takes all of its transitive dependents with it (SKIPPED);
      independent branches keep running.
    - fail_fast: stop submitting anything new after the first failure.
    - tier_limits: max concurrent jobs per compute tier (tier_of(job)).
    - on_start(job) runs on the worker thread right before run_fn(job).

    Returns {job_name: status} in the order the jobs were given.
    """
    jobs = list(jobs)
    order = [j.name for j in jobs]
    by_name = {j.name: j for j in jobs}
    adj, indeg = build_dag(jobs)
    topo_levels(adj, indeg)  # cycle check before anything runs
    indeg = dict(indeg)
    limits = dict(tier_limits or {})

    ready: List[str] = [n for n in order if indeg[n] == 0]
    results: Dict[str, str] = {}
    blocked_by: Dict[str, str] = {}
    stopped = False

    busy: Counter = Counter()
    in_flight: Dict[Future, str] = {}

    def tier(name: str) -> Optional[str]:
        return tier_of(by_name[name]) if tier_of else None

    def start_then_run(job: Job) -> None:
        # on the worker thread, so time spent queued is not counted as running
        if on_start:
            on_start(job)
        run_fn(job)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule everything that is ready and has capacity
            if not stopped:
                for name in list(ready):
                    t = tier(name)
                    if t in limits and busy[t] >= limits[t]:
                        continue
                    ready.remove(name)
                    busy[t] += 1
                    in_flight[pool.submit(start_then_run, by_name[name])] = name

            if not in_flight:
                break

            done, _pending = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                name = in_flight.pop(fut)
                busy[tier(name)] -= 1

                error: Optional[BaseException] = None
                try:
                    fut.result()
                    results[name] = OK
                except Exception as e:
                    error = e
                    results[name] = FAILED

                if on_finish:
                    on_finish(by_name[name], results[name], error)

                # unlock dependents only on success
                if results[name] == OK:
                    for nxt in sorted(adj[name]):
                        indeg[nxt] -= 1
                        if indeg[nxt] == 0:
                            ready.append(nxt)
                else:
                    for d in descendants(adj, name):
                        blocked_by.setdefault(d, name)
                    if fail_fast:
                        stopped = True

    for name in order:
        if name in results:
            continue
        results[name] = SKIPPED
        if name in blocked_by:
            reason = f"needs failed job '{blocked_by[name]}'"
        elif stopped:
            reason = "fail-fast after an earlier failure"
        else:
            reason = "no compute capacity for its instance type"
        if on_skip:
            on_skip(by_name[name], reason)

    return {name: results[name] for name in order}
