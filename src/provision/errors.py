"""Plan construction errors.

All of these are raised before anything touches the host; the CLI maps
them to exit code 2.
"""


class PlanError(Exception):
    """Invalid actions or dependency graph."""


class InvalidAction(PlanError):
    """Action is missing required fields."""


class UnsupportedActionKind(PlanError):
    """Action kind is not one of the supported kinds."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unsupported action kind: '{kind}'")


class SelfDependency(PlanError):
    """Action lists itself in depends_on."""

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action '{action_id}' depends on itself")


class ConflictingAction(PlanError):
    """Two actions share an id but differ in params or dependencies."""

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Conflicting definitions for action '{action_id}'")


class UnknownDependency(PlanError):
    """depends_on references an id that is not in the plan."""

    def __init__(self, action_id: str, missing: str):
        self.action_id = action_id
        self.missing = missing
        super().__init__(f"Action '{action_id}' depends on unknown action '{missing}'")


class CyclicDependency(PlanError):
    """No topological order exists."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")
