"""forwardgen: PyTorch source generation for sequential forward passes.

    from forwardgen import Graph, OpType, generate, build_module

    generated = generate(graph)
    module = build_module(generated, graph)
"""

from .codegen import CodegenStats, GeneratedForward, build_module, generate, generate_all  # noqa: F401
from .errors import (  # noqa: F401
    CodegenError,
    PhaseViolation,
    ScopeError,
    UnknownVariable,
    UseBeforeRegistration,
)
from .ir import Graph, Node, OpType, TensorInfo  # noqa: F401
from .naming import sanitize  # noqa: F401
from .validation import Phase, Severity, ValidationError, ValidationResult  # noqa: F401
from .ops import OP_REGISTRY, OpDef, evaluate  # noqa: F401
from .scope import Decision, DecisionKind, Generation, Scope, ScopeEvent, ScopePhase  # noqa: F401
