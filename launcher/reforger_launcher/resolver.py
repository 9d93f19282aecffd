from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Set, Tuple

from .errors import (
    FetchError,
    InvalidResolveRequest,
    ResolveCancelled,
    ResolveNotFound,
    ResolveUnreachable,
    WorkshopNotFound,
    WorkshopUnreachable,
)
from .logging_setup import get_logger
from .models import DependencyGraph, WorkshopItem
from .settings import Settings
from .workshop import WorkshopFetcher, is_workshop_id

log = get_logger("reforger.launcher.resolver")


def _components(edges: Dict[str, List[str]]) -> Dict[str, int]:
    """Strongly connected component number for every node reachable in `edges` (iterative Tarjan)."""
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    component: Dict[str, int] = {}
    stack: List[str] = []
    on_stack: Set[str] = set()
    count = 0

    def enter(node: str) -> None:
        index[node] = low[node] = len(index)
        stack.append(node)
        on_stack.add(node)

    for start in edges:
        if start in index:
            continue
        enter(start)
        work = [(start, iter(edges.get(start, ())))]
        while work:
            node, children = work[-1]
            descended = False
            for child in children:
                if child not in index:
                    enter(child)
                    work.append((child, iter(edges.get(child, ()))))
                    descended = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index[child])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component[member] = count
                    if member == node:
                        break
                count += 1
    return component


class DependencyResolver:
    """
    Breadth-first workshop dependency resolution.

    Each level's frontier is fetched concurrently; results are consumed in
    frontier order, so the discovered id order never depends on which fetch
    finishes first. An id is fetched and expanded at most once.
    """

    def __init__(self, fetcher: WorkshopFetcher, settings: Settings):
        self.fetcher = fetcher
        self.default_depth = settings.workshop_max_depth
        self.depth_ceiling = settings.workshop_max_depth_ceiling
        self.workers = settings.workshop_fetch_workers

    def _check_request(self, root_id: str, max_depth: Optional[int]) -> int:
        if not isinstance(root_id, str) or not is_workshop_id(root_id):
            raise InvalidResolveRequest(f"not a workshop id: {root_id!r}")
        depth = self.default_depth if max_depth is None else max_depth
        if not isinstance(depth, int) or isinstance(depth, bool):
            raise InvalidResolveRequest(f"max_depth must be an integer, got {depth!r}")
        if depth < 1 or depth > self.depth_ceiling:
            raise InvalidResolveRequest(f"max_depth must be between 1 and {self.depth_ceiling}, got {depth}")
        return depth

    def _fetch_root(self, root_id: str) -> WorkshopItem:
        try:
            return self.fetcher.fetch_item(root_id, with_scenarios=True)
        except WorkshopNotFound as e:
            raise ResolveNotFound(root_id) from e
        except WorkshopUnreachable as e:
            raise ResolveUnreachable(root_id, str(e)) from e

    def _fetch_level(self, pool: ThreadPoolExecutor, frontier: List[str]) -> List[Tuple[str, Optional[WorkshopItem], Optional[FetchError]]]:
        futures = [(item_id, pool.submit(self.fetcher.fetch_item, item_id, with_scenarios=False)) for item_id in frontier]
        results = []
        for item_id, fut in futures:
            try:
                results.append((item_id, fut.result(), None))
            except FetchError as e:
                results.append((item_id, None, e))
        return results

    def resolve(self, root_id: str, max_depth: Optional[int] = None,
                cancel: Optional[threading.Event] = None) -> DependencyGraph:
        depth_limit = self._check_request(root_id, max_depth)
        log.info("Resolving %s (max_depth=%d)", root_id, depth_limit)

        root = self._fetch_root(root_id)
        graph = DependencyGraph(
            root_id=root_id,
            root_name=root.name,
            names={root_id: root.name},
            scenarios=list(root.scenarios),
            max_depth=depth_limit,
        )

        visited: Set[str] = {root_id}
        edges: Dict[str, List[str]] = {}
        # edges whose target was already known; candidates for cycle reporting
        revisits: List[Tuple[str, str]] = []

        def expand(item: WorkshopItem) -> List[str]:
            found = []
            edges[item.id] = list(item.dependencies)
            for dep in item.dependencies:
                if dep in visited:
                    revisits.append((item.id, dep))
                    continue
                visited.add(dep)
                found.append(dep)
            return found

        frontier = expand(root)
        depth = 0
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="workshop-fetch") as pool:
            while frontier:
                if cancel is not None and cancel.is_set():
                    log.info("Resolution of %s cancelled after depth %d", root_id, depth)
                    raise ResolveCancelled(root_id, depth)
                depth += 1
                next_frontier: List[str] = []
                for item_id, item, err in self._fetch_level(pool, frontier):
                    if err is not None:
                        graph.errors.append(str(err))
                        if isinstance(err, WorkshopNotFound):
                            log.warning("Dependency %s does not exist, leaving it out: %s", item_id, err)
                            continue
                        # transport failure only; the item is kept
                        log.warning("Dependency %s could not be fetched: %s", item_id, err)
                        graph.dependency_ids.append(item_id)
                        continue
                    graph.dependency_ids.append(item_id)
                    graph.names[item_id] = item.name
                    if depth >= depth_limit:
                        edges[item_id] = [dep for dep in item.dependencies if dep in visited]
                        revisits.extend((item_id, dep) for dep in edges[item_id])
                        if any(dep not in visited for dep in item.dependencies):
                            graph.depth_exceeded = True
                        continue
                    next_frontier.extend(expand(item))
                graph.depth_reached = depth
                frontier = next_frontier

        component = _components(edges)
        graph.cyclic_edges = [(a, b) for a, b in revisits if component[a] == component[b]]
        for a, b in graph.cyclic_edges:
            log.debug("Cyclic dependency edge %s -> %s", a, b)

        if graph.depth_exceeded:
            log.warning("Resolution of %s truncated at depth %d", root_id, depth_limit)
        log.info("Resolved %s: %d dependencies, %d scenarios, depth %d",
                 root_id, len(graph.dependency_ids), len(graph.scenarios), graph.depth_reached)
        return graph
