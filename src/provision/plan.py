"""Plan construction for provisioning runs.

Deduplicates Actions by id and orders them so every Action comes after
the Actions it depends on. Ties are broken by manifest declaration order,
so identical input always yields an identical plan.
"""

import heapq
import logging
from typing import Iterable, Iterator, Optional

from provision.action import Action
from provision.errors import ConflictingAction, CyclicDependency, UnknownDependency

logger = logging.getLogger(__name__)


class Plan:
    """Immutable, dependency-ordered sequence of Actions.

    Use Plan.build() rather than the constructor.
    """

    def __init__(self, ordered: tuple[Action, ...]):
        self._actions = ordered
        self._by_id = {a.id: a for a in ordered}
        self._dependents: dict[str, list[str]] = {a.id: [] for a in ordered}
        for action in ordered:
            for dep in action.depends_on:
                self._dependents[dep].append(action.id)

    @classmethod
    def build(cls, actions: Iterable[Action]) -> 'Plan':
        """Build a plan from actions in declaration order.

        Raises:
            ConflictingAction: Same id declared twice with different payloads
            UnknownDependency: depends_on names an id not in the input
            CyclicDependency: Dependencies form a cycle
        """
        declared: list[Action] = []
        by_id: dict[str, Action] = {}
        for action in actions:
            existing = by_id.get(action.id)
            if existing is None:
                by_id[action.id] = action
                declared.append(action)
            elif existing != action:
                raise ConflictingAction(action.id)
            else:
                logger.debug(f"Collapsing duplicate action '{action.id}'")

        for action in declared:
            for dep in sorted(action.depends_on):
                if dep not in by_id:
                    raise UnknownDependency(action.id, dep)

        position = {a.id: i for i, a in enumerate(declared)}
        remaining = {a.id: len(a.depends_on) for a in declared}
        dependents: dict[str, list[str]] = {a.id: [] for a in declared}
        for action in declared:
            for dep in action.depends_on:
                dependents[dep].append(action.id)

        # Kahn's algorithm, ready set keyed by declaration position
        ready = [position[a.id] for a in declared if not a.depends_on]
        heapq.heapify(ready)
        ordered: list[Action] = []
        while ready:
            action = declared[heapq.heappop(ready)]
            ordered.append(action)
            for child in dependents[action.id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(ordered) != len(declared):
            stuck = [a for a in declared if remaining[a.id] > 0]
            raise CyclicDependency(_find_cycle(stuck, by_id))

        return cls(tuple(ordered))

    def iterate(self) -> Iterator[Action]:
        """Lazily yield actions in dependency order. Restartable."""
        return iter(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return self.iterate()

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._by_id

    @property
    def ids(self) -> list[str]:
        return [a.id for a in self._actions]

    def get(self, action_id: str) -> Optional[Action]:
        return self._by_id.get(action_id)

    def dependents_of(self, action_id: str) -> list[str]:
        """All actions that directly or transitively depend on action_id, in plan order."""
        found: set[str] = set()
        stack = list(self._dependents.get(action_id, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self._dependents[current])
        return [a.id for a in self._actions if a.id in found]

    def __repr__(self) -> str:
        return f"Plan({len(self)} actions)"


def _find_cycle(stuck: list[Action], by_id: dict[str, Action]) -> list[str]:
    """Return one cycle among actions Kahn's algorithm could not order.

    Every stuck action has at least one stuck dependency, so walking
    dependency edges from any of them must revisit a node.
    """
    stuck_ids = {a.id for a in stuck}
    path: list[str] = []
    index: dict[str, int] = {}
    current = stuck[0].id
    while current not in index:
        index[current] = len(path)
        path.append(current)
        current = min(d for d in by_id[current].depends_on if d in stuck_ids)
    cycle = path[index[current]:]
    # Report in dependency order: A depends on B is shown as B -> A
    cycle.reverse()
    return cycle + [cycle[0]]
