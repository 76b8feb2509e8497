"""Validated, immutable step graph for one automation.

Steps reference each other by id (`next_step_id`, and `on_true`/`on_false`
for conditions). The graph resolves those references once into an adjacency
map and rejects structures the scheduler cannot run safely: a missing start
step, dangling references, and cycles that contain no wait step (the
scheduler would spin through them inside one pass).
"""

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from errors import GraphValidationError
from models import Automation, Step, StepType

logger = logging.getLogger(__name__)


class WorkflowGraph:
    def __init__(self, automation: Automation, steps: Iterable[Step]):
        self.automation_id = automation.id
        self.version = automation.version
        self._steps: Mapping[str, Step] = MappingProxyType(self._index(automation, steps))
        self._start_id = self._resolve_start(automation)
        self._edges: Mapping[str, Tuple[str, ...]] = MappingProxyType(self._resolve_edges())
        self._reachable = frozenset(self._walk(self._start_id))
        self._reject_zero_wait_cycles()

    @classmethod
    def build(cls, automation: Automation, steps: Iterable[Step]) -> "WorkflowGraph":
        return cls(automation, steps)

    def _index(self, automation: Automation, steps: Iterable[Step]) -> Dict[str, Step]:
        indexed: Dict[str, Step] = {}
        for step in steps:
            if step.automation_id != automation.id:
                raise GraphValidationError(
                    f"Step {step.id} belongs to automation {step.automation_id}", [step.id]
                )
            if step.id in indexed:
                raise GraphValidationError(f"Duplicate step id {step.id}", [step.id])
            indexed[step.id] = step
        if not indexed:
            raise GraphValidationError("Automation must have at least one step")
        return indexed

    def _resolve_start(self, automation: Automation) -> str:
        if not automation.start_step_id:
            raise GraphValidationError("Automation must have a start step defined")
        if automation.start_step_id not in self._steps:
            raise GraphValidationError(
                f"Start step {automation.start_step_id} not found", [automation.start_step_id]
            )
        return automation.start_step_id

    def _resolve_edges(self) -> Dict[str, Tuple[str, ...]]:
        edges: Dict[str, Tuple[str, ...]] = {}
        for step in self._steps.values():
            successors = step.successor_ids()
            for target in successors:
                if target not in self._steps:
                    raise GraphValidationError(
                        f"Step {step.id} references unknown step {target}", [step.id, target]
                    )
            edges[step.id] = tuple(successors)
        return edges

    def _walk(self, start_id: str) -> List[str]:
        seen: List[str] = []
        visited = set()
        stack = [start_id]
        while stack:
            step_id = stack.pop()
            if step_id in visited:
                continue
            visited.add(step_id)
            seen.append(step_id)
            stack.extend(reversed(self._edges[step_id]))
        return seen

    def _reject_zero_wait_cycles(self) -> None:
        # Wait steps break cycles, so only edges between non-wait steps can form an illegal loop.
        white, grey, black = 0, 1, 2
        color = {step_id: white for step_id in self._reachable}

        def no_wait_successors(step_id: str) -> List[str]:
            return [
                target
                for target in self._edges[step_id]
                if self._steps[target].type != StepType.WAIT
            ]

        for root in self._reachable:
            if color[root] != white or self._steps[root].type == StepType.WAIT:
                continue
            path = [root]
            color[root] = grey
            iterators = [iter(no_wait_successors(root))]
            while iterators:
                target = next(iterators[-1], None)
                if target is None:
                    color[path.pop()] = black
                    iterators.pop()
                    continue
                if color[target] == grey:
                    cycle = path[path.index(target):] + [target]
                    raise GraphValidationError(
                        "Cycle without a wait step: " + " -> ".join(cycle), cycle
                    )
                if color[target] == white:
                    color[target] = grey
                    path.append(target)
                    iterators.append(iter(no_wait_successors(target)))

    def entry_step(self) -> Step:
        return self._steps[self._start_id]

    def step(self, step_id: str) -> Step | None:
        return self._steps.get(step_id)

    def successors_of(self, step_id: str) -> List[Step]:
        return [self._steps[target] for target in self._edges.get(step_id, ())]

    def reachable_ids(self) -> frozenset:
        return self._reachable

    def unreachable_ids(self) -> List[str]:
        return sorted(set(self._steps) - self._reachable)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)


class GraphCache:
    """Latest validated graph per automation, invalidated by the automation version."""

    def __init__(self) -> None:
        self._graphs: Dict[str, WorkflowGraph] = {}
        self._lock = threading.Lock()

    def get(self, automation: Automation, load_steps) -> WorkflowGraph:
        with self._lock:
            cached = self._graphs.get(automation.id)
        if cached is not None and cached.version == automation.version:
            return cached
        graph = WorkflowGraph.build(automation, load_steps(automation.id))
        logger.debug("Built graph for automation %s (version %d)", automation.id, automation.version)
        with self._lock:
            self._graphs[automation.id] = graph
        return graph

    def invalidate(self, automation_id: str) -> None:
        with self._lock:
            self._graphs.pop(automation_id, None)
