"""Graph-level validators (PRE_CODEGEN).

All validators receive a Graph. They catch the inconsistencies that would
otherwise surface as UnknownVariable halfway through generation, plus a
few things the scope can't see at all (name collisions after sanitation).
Results about a node carry its id and sequence position.
"""

import keyword
from collections import defaultdict

from ..ir import Graph, Node
from ..naming import sanitize
from ..ops import OP_REGISTRY
from .core import Phase, Severity, ValidationResult, register_validator


# Names the generated module binds itself
RESERVED_NAMES = frozenset({"self", "torch", "F", "nn"})


def _at(graph: Graph, node: Node) -> dict:
    return {"node_id": node.id, "position": graph.index_of(node.id)}


@register_validator("structure", Phase.PRE_CODEGEN)
def check_structure(graph: Graph) -> list[ValidationResult]:
    """Verify references, roles, and that every value is produced before it is read."""
    results = []

    def r(sev: Severity, msg: str, node: Node | None = None) -> None:
        where = _at(graph, node) if node is not None else {}
        results.append(ValidationResult("structure", sev, msg, **where))

    # --- Tensor registry consistency ---
    for node in graph:
        for t in node.inputs:
            if t not in graph.tensors:
                r(Severity.ERROR, f"{node.op.name} references unknown input tensor '{t}'", node)
        for t in node.outputs:
            if t not in graph.tensors:
                r(Severity.ERROR, f"{node.op.name} output tensor '{t}' not in registry", node)
        if node.op not in OP_REGISTRY:
            r(Severity.ERROR, f"No definition for op {node.op.name}", node)

    # --- Role tensors exist ---
    for role, names in [("input", graph.inputs), ("constant", graph.constants),
                        ("output", graph.outputs)]:
        for name in names:
            if name not in graph.tensors:
                r(Severity.ERROR, f"Graph {role} '{name}' not in tensor registry")

    # --- Inputs and constants must not be bound by nodes ---
    for role, names in [("input", graph.inputs), ("constant", graph.constants)]:
        for name in names:
            producers = graph.producers(name)
            if producers:
                r(Severity.ERROR,
                  f"Graph {role} '{name}' is produced by node {producers[0].id} "
                  f"(should be external)", producers[0])

    # --- Outputs are computed values or passed-through inputs ---
    for name in graph.outputs:
        if name in graph.constants:
            r(Severity.ERROR, f"Graph output '{name}' is a constant")
        elif not graph.producers(name) and name not in graph.inputs:
            r(Severity.ERROR, f"Graph output '{name}' has no producer node")

    # --- Every read happens after a producer, in sequence order ---
    defined = set(graph.inputs) | set(graph.constants)
    for node in graph:
        for t in node.inputs:
            if t in graph.tensors and t not in defined:
                r(Severity.ERROR, f"{node.op.name} reads '{t}' before any node produces it", node)
        defined.update(node.outputs)

    # --- SPLIT arity ---
    for node in graph:
        sizes = node.attrs.get("sizes")
        if sizes is not None and len(sizes) != len(node.outputs):
            r(Severity.ERROR,
              f"{node.op.name} has {len(node.outputs)} outputs for {len(sizes)} sizes", node)

    return results


@register_validator("repeated_outputs", Phase.PRE_CODEGEN)
def check_repeated_outputs(graph: Graph) -> list[ValidationResult]:
    """Flag nodes that list the same output name in several slots.

    The scope treats the repeats as one producer event, so generation still
    works, but the earlier slots' values are unreachable.
    """
    results = []
    for node in graph:
        seen = set()
        for name in node.outputs:
            if name in seen:
                results.append(ValidationResult(
                    "repeated_outputs", Severity.WARNING,
                    f"{node.op.name} produces '{name}' more than once",
                    **_at(graph, node),
                ))
            seen.add(name)
    return results


@register_validator("sanitized_collisions", Phase.PRE_CODEGEN)
def check_sanitized_collisions(graph: Graph) -> list[ValidationResult]:
    """Distinct graph names must stay distinct, valid identifiers after sanitation."""
    results = []
    r = lambda sev, msg: results.append(ValidationResult("sanitized_collisions", sev, msg))

    by_ident: dict[str, list[str]] = defaultdict(list)
    for name in graph.tensors:
        by_ident[sanitize(name)].append(name)

    for ident, names in by_ident.items():
        if len(names) > 1:
            joined = ", ".join(f"'{n}'" for n in names)
            r(Severity.ERROR, f"Names {joined} all sanitize to '{ident}'")
        if not ident.isidentifier() or keyword.iskeyword(ident):
            r(Severity.ERROR, f"'{names[0]}' sanitizes to '{ident}', not a usable identifier")
        elif ident in RESERVED_NAMES:
            r(Severity.ERROR, f"'{names[0]}' sanitizes to reserved name '{ident}'")

    return results


@register_validator("dead_values", Phase.PRE_CODEGEN)
def check_dead_values(graph: Graph) -> list[ValidationResult]:
    """Report produced values nothing reads and the graph doesn't return."""
    consumed = {t for node in graph for t in node.inputs}
    returned = set(graph.outputs)
    results = []
    for node in graph:
        for name in dict.fromkeys(node.outputs):
            if name not in consumed and name not in returned:
                results.append(ValidationResult(
                    "dead_values", Severity.INFO,
                    f"{node.op.name} output '{name}' is never used",
                    **_at(graph, node),
                ))
    return results
