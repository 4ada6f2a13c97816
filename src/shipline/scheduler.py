# scheduler.py
from __future__ import annotations

import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from .concurrency import CancelToken
from .dag import build_dag, descendants
from .model import Job, JobResult, JobStatus, utcnow
from .ui.console import get_console

ExecuteFn = Callable[[Job], JobResult]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class JobGraphScheduler:
    """
    Runs a job graph on a bounded worker pool.

    - a job is submitted once every job it needs finished with `success`
    - a failure marks all transitive dependents `skipped` (a cancellation
      marks them `cancelled`) without ever starting them
    - ready jobs are submitted in declaration order
    - after the token fires no new job starts; unstarted jobs end `cancelled`
    """

    def __init__(self, max_workers: Optional[int] = None):
        self.max_workers = max_workers or default_workers()

    def run(
        self,
        jobs: List[Job],
        execute: ExecuteFn,
        token: Optional[CancelToken] = None,
        on_complete: Optional[Callable[[JobResult], None]] = None,
    ) -> Dict[str, JobResult]:
        console = get_console()
        token = token or CancelToken()
        jobs = list(jobs)
        by_name = {j.name: j for j in jobs}
        rank = {j.name: i for i, j in enumerate(jobs)}

        # raises GraphError before anything is submitted
        adj, indeg = build_dag(jobs)
        indeg = dict(indeg)

        ready: List[str] = [j.name for j in jobs if indeg[j.name] == 0]
        results: Dict[str, JobResult] = {}
        in_flight: Dict[Future, str] = {}

        def finish(res: JobResult) -> None:
            results[res.name] = res
            if on_complete is not None:
                on_complete(res)

        def skip_dependents(name: str, why: str, status: JobStatus) -> None:
            for dep in sorted(descendants(adj, name), key=rank.__getitem__):
                if dep in results:
                    continue
                if dep in ready:
                    ready.remove(dep)
                console.print_job_skipped(dep, why)
                finish(JobResult(name=dep, status=status, error=why, ended_at=utcnow()))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule all currently ready
                while ready and not token.cancelled:
                    name = ready.pop(0)
                    fut = pool.submit(execute, by_name[name])
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight.keys()), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: rank[in_flight[f]]):
                    name = in_flight.pop(fut)
                    try:
                        res = fut.result()
                    except Exception as e:
                        res = JobResult(
                            name=name,
                            status=JobStatus.FAILED,
                            error=f"{type(e).__name__}: {e}",
                            error_kind=getattr(e, "kind", "error"),
                            ended_at=utcnow(),
                        )
                    finish(res)

                    # unlock dependents only on success
                    if res.status == JobStatus.SUCCESS:
                        unlocked = []
                        for nxt in adj[name]:
                            indeg[nxt] -= 1
                            # already skipped through another failed dependency
                            if indeg[nxt] == 0 and nxt not in results:
                                unlocked.append(nxt)
                        ready.extend(sorted(unlocked, key=rank.__getitem__))
                        ready.sort(key=rank.__getitem__)
                    else:
                        # a cancelled dependency cancels its dependents; anything else skips them
                        status = JobStatus.CANCELLED if res.status == JobStatus.CANCELLED else JobStatus.SKIPPED
                        skip_dependents(name, f"dependency '{name}' {res.status.value}", status)

        # anything left was never started because the run was cancelled
        for j in jobs:
            if j.name not in results:
                finish(JobResult(
                    name=j.name,
                    status=JobStatus.CANCELLED,
                    error=token.reason or "cancelled",
                    error_kind="cancelled",
                    ended_at=utcnow(),
                ))

        return {j.name: results[j.name] for j in jobs}
