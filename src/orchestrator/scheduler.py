"""Concurrent DAG walker shared by the planner and the executor.

A module is dispatched once every upstream module in the walk has finished
successfully. Forward walks treat dependencies as upstream (plan, apply);
reverse walks treat dependents as upstream (destroy). When a module fails,
everything downstream of it is reported as blocked and never dispatched.
Modules with no path between them run concurrently on a bounded pool.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, Optional

from orchestrator.graph import ModuleGraph

logger = logging.getLogger(__name__)


class DagWalker:
    """Walks a set of modules of a ModuleGraph in dependency order.

    Attributes:
        graph: The graph the modules belong to
        module_ids: Modules to visit (others are treated as already satisfied)
        reverse: Visit dependents before their dependencies
        max_workers: Upper bound on concurrently visited modules
        cancel_event: When set, no further module is dispatched
        order: Module ids in dispatch order (filled while walking)
    """

    def __init__(self, graph: ModuleGraph, module_ids: Iterable[str], reverse: bool = False,
                 max_workers: int = 4, cancel_event: Optional[threading.Event] = None):
        self.graph = graph
        self.module_ids = set(module_ids)
        self.reverse = reverse
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event
        self.order: list[str] = []

    def _upstream(self, module_id: str) -> set[str]:
        edges = self.graph.dependents(module_id) if self.reverse else self.graph.dependencies(module_id)
        return edges & self.module_ids

    def _downstream(self, module_id: str) -> set[str]:
        edges = self.graph.dependencies(module_id) if self.reverse else self.graph.dependents(module_id)
        return edges & self.module_ids

    def _downstream_closure(self, module_id: str) -> set[str]:
        seen: set[str] = set()
        pending = [module_id]
        while pending:
            for d in self._downstream(pending.pop()):
                if d not in seen:
                    seen.add(d)
                    pending.append(d)
        return seen

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def walk(
        self,
        visit: Callable[[str], bool],
        on_blocked: Callable[[str, str], None],
        on_cancelled: Optional[Callable[[str], None]] = None,
    ) -> bool:
        """Visit every module, respecting order and failure propagation.

        Args:
            visit: Called in a worker thread per module; returns success.
                An exception counts as failure.
            on_blocked: Called as (module_id, failed_upstream_id) for each
                module that will not run because something upstream failed
            on_cancelled: Called for each module never dispatched because
                the walk was cancelled

        Returns:
            True if every module was visited successfully
        """
        waiting = {m: len(self._upstream(m)) for m in self.module_ids}
        ready = sorted(m for m, count in waiting.items() if count == 0)
        started: set[str] = set()
        blocked: set[str] = set()
        all_ok = True

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures: dict[Future, str] = {}

            while ready or futures:
                if self.cancelled:
                    ready = []
                while ready and len(futures) < self.max_workers:
                    module_id = ready.pop(0)
                    started.add(module_id)
                    self.order.append(module_id)
                    futures[pool.submit(visit, module_id)] = module_id

                if not futures:
                    break

                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: futures[f]):
                    module_id = futures.pop(future)
                    try:
                        ok = bool(future.result())
                    except Exception:
                        logger.exception(f"Unhandled error while visiting '{module_id}'")
                        ok = False

                    if ok:
                        for d in self._downstream(module_id):
                            waiting[d] -= 1
                            if waiting[d] == 0 and d not in blocked:
                                ready.append(d)
                        continue

                    all_ok = False
                    for d in sorted(self._downstream_closure(module_id)):
                        if d not in blocked and d not in started:
                            blocked.add(d)
                            on_blocked(d, module_id)
                ready = sorted(set(ready) - blocked)

        never_run = sorted(self.module_ids - started - blocked)
        if never_run:
            all_ok = False
            for module_id in never_run:
                logger.info(f"Not starting '{module_id}': run cancelled")
                if on_cancelled is not None:
                    on_cancelled(module_id)
        return all_ok
