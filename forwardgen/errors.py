"""Error types raised by the scope ledger and the code generator.

All of them are fatal for the graph being compiled: they mean the caller
built an inconsistent node list or broke the build/emit protocol. None of
them should be caught and turned into a default move or clone.
"""


class ScopeError(Exception):
    """Base class for ownership ledger faults."""

    def __init__(self, name: str, position: int | None, message: str) -> None:
        self.name = name
        self.position = position
        super().__init__(message)


class UnknownVariable(ScopeError):
    """A use references a name with no generation visible at that position."""

    def __init__(self, name: str, position: int | None = None) -> None:
        where = f" at position {position}" if position is not None else ""
        super().__init__(name, position, f"No variable with name '{name}'{where}")


class UseBeforeRegistration(ScopeError):
    """A use was resolved against a generation whose pending uses are exhausted.

    Every emitted use must have been registered during the build phase.
    """

    def __init__(self, name: str, position: int) -> None:
        super().__init__(
            name, position,
            f"Use of '{name}' at position {position} was never registered "
            f"(pending uses already exhausted)",
        )


class PhaseViolation(ScopeError):
    """A scope operation was called in the wrong phase."""

    def __init__(self, operation: str, phase: str, name: str = "",
                 position: int | None = None) -> None:
        self.operation = operation
        self.phase = phase
        super().__init__(
            name, position,
            f"{operation}() is not allowed while the scope is {phase}",
        )


class CodegenError(Exception):
    """A scope fault raised while generating code for one graph.

    Wraps the underlying ScopeError with the graph and node it came from
    so the caller can report it and move on to the next graph.
    """

    def __init__(self, graph_name: str, node_id: int | None, position: int,
                 cause: ScopeError) -> None:
        self.graph_name = graph_name
        self.node_id = node_id
        self.position = position
        self.cause = cause
        site = f"node {node_id}" if node_id is not None else "return"
        super().__init__(
            f"Code generation failed for graph '{graph_name}' at {site} "
            f"(position {position}): {cause}"
        )
