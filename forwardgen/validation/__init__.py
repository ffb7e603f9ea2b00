"""Validation framework for forward-pass code generation.

Validators are tagged checks that run at specific points of generation.
Each check inspects one artifact (the Graph before the build phase, the
Scope after the emit phase) and returns diagnostics located by node and
position.

The registry collects validators via decorator. generate() runs them at
the appropriate points, but they work standalone too:

    from forwardgen.validation import run_validators, Phase
    results = run_validators(Phase.PRE_CODEGEN, graph, fail_on=None)

Validators are defined in submodules:
    graph.py  — graph checks (structure, ordering, name collisions)
    scope.py  — ledger checks after emission (unresolved uses)

Core types live in core.py to avoid circular imports.
"""

from .core import (  # noqa: F401
    Phase,
    Severity,
    ValidationResult,
    ValidationError,
    register_validator,
    registered,
    run_validators,
)

# Import submodules to trigger validator registration.
from . import graph, scope  # noqa: F401
