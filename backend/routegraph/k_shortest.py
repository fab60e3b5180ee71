from __future__ import annotations

import heapq
from collections.abc import Callable, Hashable
from dataclasses import dataclass

Cost = tuple[float, ...]
# node -> ((next_node, edge_id, cost_vector), ...)
Adjacency = dict[str, tuple[tuple[str, str, Cost], ...]]
TransitionStateFn = Callable[[Hashable, str], Hashable | None]


@dataclass(frozen=True)
class PathResult:
    nodes: tuple[str, ...]
    edges: tuple[str, ...]
    cost: Cost


class PathNotFoundError(ValueError):
    pass


def _add(a: Cost, b: Cost) -> Cost:
    return tuple(x + y for x, y in zip(a, b))


def _zero(adjacency: Adjacency) -> Cost:
    for arcs in adjacency.values():
        for _nxt, _edge, cost in arcs:
            return tuple(0.0 for _ in cost)
    return (0.0,)


def _dijkstra_shortest_path(
    *,
    adjacency: Adjacency,
    start: str,
    goal: str,
    banned_nodes: set[str] | None = None,
    banned_edges: set[str] | None = None,
    max_hops: int = 64,
    explored_counter: list[int] | None = None,
    max_state_budget: int | None = None,
    initial_state: Hashable = "start",
    transition_state_fn: TransitionStateFn | None = None,
) -> PathResult:
    """Lexicographic Dijkstra: costs are tuples compared element by element."""
    banned_nodes = banned_nodes or set()
    banned_edges = banned_edges or set()
    if start in banned_nodes or goal in banned_nodes:
        raise PathNotFoundError("start/goal blocked")
    zero = _zero(adjacency)
    heap: list[tuple[Cost, tuple[str, ...], tuple[str, ...], Hashable]] = [(zero, (start,), (), initial_state)]
    best_cost_by_state: dict[tuple[str, Hashable], Cost] = {(start, initial_state): zero}
    while heap:
        if max_state_budget is not None and max_state_budget > 0 and explored_counter is not None:
            if explored_counter[0] >= max_state_budget:
                raise PathNotFoundError("state budget exceeded")
        cost, path, edge_path, state_key = heapq.heappop(heap)
        if explored_counter is not None:
            explored_counter[0] += 1
        node = path[-1]
        if node == goal:
            return PathResult(nodes=path, edges=edge_path, cost=cost)
        if len(edge_path) >= max_hops:
            continue
        for nxt, edge_id, edge_cost in adjacency.get(node, ()):
            if nxt in banned_nodes or edge_id in banned_edges:
                continue
            if nxt in path:
                continue
            next_state_key = state_key
            if transition_state_fn is not None:
                next_state_key = transition_state_fn(state_key, edge_id)
                if next_state_key is None:
                    continue
            new_cost = _add(cost, edge_cost)
            best_key = (nxt, next_state_key)
            prev_best = best_cost_by_state.get(best_key)
            if prev_best is not None and new_cost >= prev_best:
                continue
            best_cost_by_state[best_key] = new_cost
            heapq.heappush(heap, (new_cost, (*path, nxt), (*edge_path, edge_id), next_state_key))
    raise PathNotFoundError("no path")


def _edge_costs(adjacency: Adjacency) -> dict[str, Cost]:
    return {edge_id: cost for arcs in adjacency.values() for _nxt, edge_id, cost in arcs}


def yen_k_shortest_paths_with_stats(
    *,
    adjacency: Adjacency,
    start: str,
    goal: str,
    k: int,
    max_hops: int = 64,
    max_state_budget: int | None = None,
    initial_state: Hashable = "start",
    transition_state_fn: TransitionStateFn | None = None,
) -> tuple[tuple[PathResult, ...], dict[str, int | str]]:
    if k <= 0:
        return (), {
            "explored_states": 0,
            "generated_candidates": 0,
            "termination_reason": "invalid_k",
            "no_path_reason": "invalid_k",
            "first_error": "",
        }
    explored_counter = [0]
    generated_candidates = 0
    first_error = ""
    try:
        first = _dijkstra_shortest_path(
            adjacency=adjacency,
            start=start,
            goal=goal,
            max_hops=max_hops,
            explored_counter=explored_counter,
            max_state_budget=max_state_budget,
            initial_state=initial_state,
            transition_state_fn=transition_state_fn,
        )
    except PathNotFoundError as exc:
        first_error = str(exc).strip() or "no path"
        return (), {
            "explored_states": explored_counter[0],
            "generated_candidates": 0,
            "termination_reason": "no_initial_path",
            "no_path_reason": normalize_no_path_reason(first_error),
            "first_error": first_error,
        }

    costs = _edge_costs(adjacency)
    zero = tuple(0.0 for _ in first.cost)
    shortest: list[PathResult] = [first]
    candidates: list[tuple[Cost, tuple[str, ...], tuple[str, ...]]] = []
    candidate_seen: set[tuple[str, ...]] = {first.edges}
    termination_reason = "k_paths_collected"

    for _ in range(1, k):
        previous = shortest[-1]
        for spur_idx in range(len(previous.nodes) - 1):
            root_nodes = previous.nodes[: spur_idx + 1]
            root_edges = previous.edges[:spur_idx]
            spur_node = root_nodes[-1]

            banned_edges: set[str] = set()
            for p in shortest:
                if p.nodes[: spur_idx + 1] == root_nodes and p.edges[:spur_idx] == root_edges and len(p.edges) > spur_idx:
                    banned_edges.add(p.edges[spur_idx])

            spur_state: Hashable | None = initial_state
            if transition_state_fn is not None:
                for edge_id in root_edges:
                    spur_state = transition_state_fn(spur_state, edge_id)
                    if spur_state is None:
                        break
                if spur_state is None:
                    continue
            try:
                spur = _dijkstra_shortest_path(
                    adjacency=adjacency,
                    start=spur_node,
                    goal=goal,
                    banned_nodes=set(root_nodes[:-1]),
                    banned_edges=banned_edges,
                    max_hops=max(0, max_hops - len(root_edges)),
                    explored_counter=explored_counter,
                    max_state_budget=max_state_budget,
                    initial_state=spur_state,
                    transition_state_fn=transition_state_fn,
                )
            except PathNotFoundError as exc:
                if not first_error:
                    first_error = str(exc).strip() or "no path"
                continue

            total_edges = (*root_edges, *spur.edges)
            if total_edges in candidate_seen:
                continue
            root_cost = zero
            for edge_id in root_edges:
                root_cost = _add(root_cost, costs[edge_id])
            total_nodes = (*root_nodes[:-1], *spur.nodes)
            heapq.heappush(candidates, (_add(root_cost, spur.cost), total_nodes, total_edges))
            generated_candidates += 1
            candidate_seen.add(total_edges)

        if not candidates:
            termination_reason = "candidate_pool_exhausted"
            break
        best_cost, best_nodes, best_edges = heapq.heappop(candidates)
        shortest.append(PathResult(nodes=best_nodes, edges=best_edges, cost=best_cost))
    if len(shortest) >= int(max(1, k)):
        termination_reason = "k_paths_collected"
    return tuple(shortest), {
        "explored_states": int(explored_counter[0]),
        "generated_candidates": int(generated_candidates),
        "termination_reason": termination_reason,
        "no_path_reason": "",
        "first_error": first_error,
    }


def normalize_no_path_reason(message: str) -> str:
    lowered = str(message or "").strip().lower()
    if "state budget" in lowered:
        return "state_budget_exceeded"
    if "start/goal blocked" in lowered:
        return "start_or_goal_blocked"
    if "no path" in lowered:
        return "no_path"
    return "path_search_exhausted"

