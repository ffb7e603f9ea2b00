"""Validation types, check registry and runner.

A check is a plain function tagged with the checkpoint it runs at. The
checkpoint fixes what the check receives: the Graph before the build
phase, or the Scope the emit phase has just drained. Results can point at
the node and sequence position they concern, the same coordinates a
CodegenError carries, so a report reads alongside Graph.dump().

Validator submodules import from here; __init__ re-exports.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..ir import Graph
from ..scope import Scope


class Phase(Enum):
    """Checkpoints of generate() where checks run."""
    PRE_CODEGEN = "pre-codegen"     # receives the Graph
    POST_EMIT   = "post-emit"       # receives the drained Scope

    @property
    def target_type(self) -> type:
        return Graph if self is Phase.PRE_CODEGEN else Scope


class Severity(Enum):
    """Lower value = more serious."""
    ERROR   = 0     # generated code would be wrong, or generation would fail
    WARNING = 1     # generates, but some value is unreachable or suspicious
    INFO    = 2

    def reaches(self, threshold: "Severity") -> bool:
        """True if this severity is at least as serious as `threshold`."""
        return self.value <= threshold.value


@dataclass
class ValidationResult:
    validator: str
    severity: Severity
    message: str
    node_id: int | None = None
    position: int | None = None

    @property
    def location(self) -> str:
        if self.node_id is not None:
            return f"node {self.node_id}, position {self.position}"
        if self.position is not None:
            return f"position {self.position}"
        return ""

    def __str__(self) -> str:
        where = f" ({self.location})" if self.location else ""
        return f"[{self.severity.name}] {self.validator}{where}: {self.message}"


class ValidationError(Exception):
    """A checkpoint produced results at or above the failing severity.

    `results` holds everything the checkpoint reported; only the fatal
    ones are listed in the message.
    """

    def __init__(self, phase: Phase, results: list[ValidationResult],
                 fail_on: Severity = Severity.ERROR,
                 graph_name: str | None = None) -> None:
        self.phase = phase
        self.results = results
        self.graph_name = graph_name
        fatal = [r for r in results if r.severity.reaches(fail_on)]
        subject = f" for graph '{graph_name}'" if graph_name is not None else ""
        lines = [f"Validation failed{subject} at {phase.name} ({len(fatal)} issue(s)):"]
        lines += [f"  {r}" for r in fatal]
        super().__init__("\n".join(lines))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Check = Callable[[Any], list[ValidationResult]]

_CHECKS: dict[Phase, dict[str, Check]] = {phase: {} for phase in Phase}


def register_validator(name: str, phase: Phase):
    """Decorator adding a check to a phase. Names are unique per phase."""
    def decorator(fn: Check) -> Check:
        if name in _CHECKS[phase]:
            raise ValueError(f"Validator '{name}' already registered for {phase.name}")
        _CHECKS[phase][name] = fn
        return fn
    return decorator


def registered(phase: Phase) -> list[str]:
    """Names of the checks for a phase, in run order."""
    return list(_CHECKS[phase])


def run_validators(
    phase: Phase,
    target: Graph | Scope,
    *,
    fail_on: Severity | None = Severity.ERROR,
    graph_name: str | None = None,
) -> list[ValidationResult]:
    """Run every check registered for `phase` against `target`.

    Args:
        phase: Checkpoint; decides whether `target` must be a Graph or a Scope.
        target: The artifact to check.
        fail_on: Raise if any result reaches this severity. None collects
            without raising.
        graph_name: Reported in ValidationError. Defaults to the Graph's
            name for PRE_CODEGEN.

    Raises:
        TypeError: `target` is not the artifact `phase` checks.
        ValidationError: A result reached `fail_on`.
    """
    if not isinstance(target, phase.target_type):
        raise TypeError(f"{phase.name} checks a {phase.target_type.__name__}, "
                        f"got {type(target).__name__}")
    if graph_name is None and isinstance(target, Graph):
        graph_name = target.name

    results: list[ValidationResult] = []
    for check in _CHECKS[phase].values():
        results.extend(check(target))

    if fail_on is not None and any(r.severity.reaches(fail_on) for r in results):
        raise ValidationError(phase, results, fail_on, graph_name)
    return results
