"""Forward-pass code generator.

Walks a Graph twice against a fresh Scope and writes a PyTorch module:

    build   Inputs are produced at position 0. Node i reads its inputs at
            position i and produces its outputs at position i + 1, so a
            node that rebinds a name it reads (`x = x.relu_()`) still
            reads the old value. The return statement reads the graph
            outputs at position len(graph). The caller keeps its input
            tensors, which is registered as one extra use of every input.
    emit    Each read is resolved in program order. Owned slots render
            the decision (clone while the value is still needed, bare on
            its last use); borrowed slots render bare.

    graph = Graph("mlp")
    ...
    generated = generate(graph)
    print(generated.source)
    module = build_module(generated, graph)
    out = module(torch.randn(4, 64))

Constants are module buffers (`self.w`), owned by the module rather than
the forward pass, so they never go through the scope and are cloned
whenever an owned slot reads them.
"""

import keyword
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import torch

from .errors import CodegenError, ScopeError
from .ir import Graph
from .naming import sanitize
from .ops import OP_REGISTRY, owns_first_input, render
from .scope import Decision, Scope, ScopeEvent
from .validation import Phase, Severity, ValidationError, ValidationResult, run_validators


INDENT = "    "


@dataclass
class CodegenStats:
    """Counts of how value references were written out."""
    uses: int = 0           # resolved scope uses (including the return)
    duplicates: int = 0     # decisions that kept the value alive
    moves: int = 0          # decisions that were a last use
    clones: int = 0         # clone expressions emitted (owned slots only)
    inplace: int = 0        # nodes emitted in in-place / view form

    def __str__(self) -> str:
        return (f"Codegen: {self.uses} uses ({self.moves} moves, "
                f"{self.duplicates} duplicates), {self.clones} clones emitted, "
                f"{self.inplace} owned-input nodes")


@dataclass
class GeneratedForward:
    """Result of generating code for one graph."""
    graph_name: str
    class_name: str
    source: str
    decisions: list[Decision] = field(default_factory=list)
    stats: CodegenStats = field(default_factory=CodegenStats)
    validation: list[ValidationResult] = field(default_factory=list)

    def save(self, path: str | Path) -> None:
        """Write the generated module source to `path`."""
        Path(path).write_text(self.source)

    def __str__(self) -> str:
        return self.source


def generate(
    graph: Graph,
    *,
    duplicate: str = "{name}.clone()",
    move: str = "{name}",
    class_name: str = "Model",
    validation: str = "normal",
    verbose: bool = False,
    log: list[ScopeEvent] | None = None,
) -> GeneratedForward:
    """Generate a PyTorch module implementing the graph's forward pass.

    Args:
        graph: The ordered graph to compile.
        duplicate: Template for a reference that must leave the value
            intact. Format string with a `{name}` field.
        move: Template for a last-use reference.
        class_name: Name of the generated nn.Module subclass.
        validation: How strictly to enforce validation checks.
            "strict"  — Fail on WARNING or ERROR.
            "normal"  — Fail on ERROR only (default).
            "none"    — Skip validation entirely.
        verbose: Print the graph summary, validation results and stats.
        log: If provided, receives a ScopeEvent for every ledger operation.

    Raises:
        ValidationError: The graph (or the scope after emission) failed
            validation.
        CodegenError: The scope rejected a use. Fatal for this graph only.
    """
    for label, template in (("duplicate", duplicate), ("move", move)):
        if "{name}" not in template:
            raise ValueError(f"{label} template must contain '{{name}}', got '{template}'")
    if not class_name.isidentifier() or keyword.iskeyword(class_name):
        raise ValueError(f"class_name '{class_name}' is not a valid identifier")
    fail_on = _validation_severity(validation)

    if verbose:
        print(graph.summary())
        print()

    results = _validate(Phase.PRE_CODEGEN, graph, graph.name, fail_on, verbose)

    scope = Scope(log)
    _build(graph, scope)
    scope.begin_emit()

    emitter = _Emitter(graph, scope, duplicate, move)
    body = emitter.emit()

    results += _validate(Phase.POST_EMIT, scope, graph.name, fail_on, verbose)

    source = _module_source(graph, class_name, body)
    if verbose:
        print(emitter.stats)
        print()

    return GeneratedForward(
        graph_name=graph.name,
        class_name=class_name,
        source=source,
        decisions=emitter.decisions,
        stats=emitter.stats,
        validation=results,
    )


def generate_all(graphs: list[Graph], **kwargs) -> tuple[dict[str, GeneratedForward],
                                                         dict[str, Exception]]:
    """Generate code for several graphs, each with its own scope.

    A graph that fails with CodegenError or ValidationError is reported in
    the second dict and the remaining graphs are still compiled.

    Returns:
        (results by graph name, failures by graph name)

    Raises:
        ValueError: Two graphs share a name. Checked before anything is
            generated.
    """
    repeated = [name for name, n in Counter(g.name for g in graphs).items() if n > 1]
    if repeated:
        raise ValueError(f"Duplicate graph names: {', '.join(repeated)}")

    results: dict[str, GeneratedForward] = {}
    failures: dict[str, Exception] = {}
    for graph in graphs:
        try:
            results[graph.name] = generate(graph, **kwargs)
        except (CodegenError, ValidationError) as err:
            failures[graph.name] = err
    return results, failures


def build_module(generated: GeneratedForward, graph: Graph | None = None) -> torch.nn.Module:
    """Execute generated source and instantiate its module.

    If `graph` is given, its constant buffers are loaded into the module.
    """
    namespace: dict = {}
    code = compile(generated.source, f"<forwardgen:{generated.graph_name}>", "exec")
    exec(code, namespace)
    module = namespace[generated.class_name]()

    if graph is not None:
        state = {}
        for name in graph.constants:
            buffer = graph.tensors[name].buffer
            if buffer is None:
                raise ValueError(f"Constant '{name}' has no data loaded")
            state[sanitize(name)] = torch.from_numpy(np.ascontiguousarray(buffer))
        module.load_state_dict(state)

    module.eval()
    return module


# ---------------------------------------------------------------------------
# Build phase
# ---------------------------------------------------------------------------

def _build(graph: Graph, scope: Scope) -> None:
    """Register every producer and every future use, in sequence order."""
    constants = set(graph.constants)

    for name in graph.inputs:
        scope.register_produced(name, 0)
        # The caller still holds its input tensors after forward() returns.
        _guarded(graph, None, 0, scope.register_future_use, name, 0)

    for i, node in enumerate(graph):
        for name in node.inputs:
            if name not in constants:
                _guarded(graph, node.id, i, scope.register_future_use, name, i)
        for name in node.outputs:
            scope.register_produced(name, i + 1)

    end = len(graph)
    for name in graph.outputs:
        _guarded(graph, None, end, scope.register_future_use, name, end)


def _guarded(graph: Graph, node_id: int | None, position: int, fn, *args):
    """Call a scope method, attaching graph context to any ScopeError."""
    try:
        return fn(*args)
    except ScopeError as err:
        raise CodegenError(graph.name, node_id, position, err) from err


# ---------------------------------------------------------------------------
# Emit phase
# ---------------------------------------------------------------------------

class _Emitter:
    """Writes the forward() body, resolving every read against the scope."""

    def __init__(self, graph: Graph, scope: Scope, duplicate: str, move: str) -> None:
        self.graph = graph
        self.scope = scope
        self.duplicate = duplicate
        self.move = move
        self.constants = set(graph.constants)
        self.decisions: list[Decision] = []
        self.stats = CodegenStats()

    def emit(self) -> list[str]:
        lines = []
        for i, node in enumerate(self.graph):
            owned = owns_first_input(node, self.graph)
            refs = [self._reference(node.id, name, i, owned and slot == 0)
                    for slot, name in enumerate(node.inputs)]
            if owned:
                self.stats.inplace += 1
            targets = ", ".join(sanitize(name) for name in node.outputs)
            if OP_REGISTRY[node.op].tuple_result and len(node.outputs) == 1:
                targets += ","
            lines.append(f"{targets} = {render(node, self.graph, refs)}")

        end = len(self.graph)
        returned = [self._reference(None, name, end, owned=True)
                    for name in self.graph.outputs]

        # Release the caller's hold on the inputs.
        for name in self.graph.inputs:
            _guarded(self.graph, None, 0, self.scope.resolve_use, name, 0)

        if not returned:
            lines.append("return None")
        else:
            lines.append(f"return {', '.join(returned)}")
        return lines

    def _reference(self, node_id: int | None, name: str, position: int,
                   owned: bool) -> str:
        if name in self.constants:
            ref = f"self.{sanitize(name)}"
            if owned:
                self.stats.clones += 1
                return self.duplicate.format(name=ref)
            return ref

        decision = _guarded(self.graph, node_id, position,
                            self.scope.resolve_use, name, position)
        self.decisions.append(decision)
        self.stats.uses += 1
        if decision.is_move:
            self.stats.moves += 1
        else:
            self.stats.duplicates += 1

        if not owned:
            return decision.name
        if not decision.is_move:
            self.stats.clones += 1
        return decision.render(self.duplicate, self.move)


# ---------------------------------------------------------------------------
# Module assembly
# ---------------------------------------------------------------------------

def _module_source(graph: Graph, class_name: str, body: list[str]) -> str:
    """Wrap the forward() body in an importable module defining `class_name`."""
    lines = [
        f'"""Generated forward pass for graph \'{graph.name}\'."""',
        "",
        "import torch",
        "import torch.nn.functional as F",
        "",
        "",
        f"class {class_name}(torch.nn.Module):",
        f"{INDENT}def __init__(self):",
        f"{INDENT * 2}super().__init__()",
    ]
    for name in graph.constants:
        info = graph.tensors[name]
        lines.append(
            f"{INDENT * 2}self.register_buffer({sanitize(name)!r}, "
            f"torch.empty({tuple(info.shape)!r}, dtype=torch.{info.dtype}))"
        )

    args = ", ".join(["self"] + [sanitize(name) for name in graph.inputs])
    lines.append("")
    lines.append(f"{INDENT}def forward({args}):")
    lines.extend(f"{INDENT * 2}{line}" for line in body)
    return "\n".join(lines) + "\n"


def _validate(phase: Phase, target: Graph | Scope, graph_name: str,
              fail_on: Severity | None, verbose: bool) -> list[ValidationResult]:
    """Run validators for a phase, optionally printing results."""
    if fail_on is None:
        return []
    results = run_validators(phase, target, fail_on=fail_on, graph_name=graph_name)
    if verbose and results:
        for r in results:
            print(r)
    return results


def _validation_severity(validation: str) -> Severity | None:
    """Map validation preference string to fail_on severity."""
    if validation == "strict":
        return Severity.WARNING
    if validation == "normal":
        return Severity.ERROR
    if validation == "none":
        return None
    raise ValueError(
        f"Unknown validation '{validation}' "
        f"(expected 'strict', 'normal', or 'none')"
    )
