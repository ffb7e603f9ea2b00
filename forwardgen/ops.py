"""Op definitions: how each op is written out and how it evaluates.

Each OpDef describes everything the code generator needs to know about an
op: the PyTorch expression it renders to, whether the expression takes
ownership of its first input (in-place kernels and views), and a numpy
evaluator used as the reference when checking generated code.

Ownership of input slots:
    owned     The expression may mutate or alias the value (`x.relu_()`,
              `x.reshape(...)`). The reference is rendered from the scope's
              decision: clone while the value is still needed, bare on the
              last use.
    borrowed  The expression only reads the value. The use is still
              resolved against the scope so the counters stay exact, but
              the reference is always rendered bare.

Only slot 0 is ever owned.

Adding a new op: define an OpDef and add it to OP_REGISTRY.
"""

from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from .ir import Graph, Node, OpType


# Renderer: (input references, attrs) -> Python expression
Renderer = Callable[[list[str], dict[str, Any]], str]

# Numpy evaluator: (inputs, attrs) -> output array, or one array per output
NumpyEvaluator = Callable[[list[np.ndarray], dict[str, Any]], Any]


@dataclass
class OpDef:
    """Complete code-generation definition of an op type.

    Fields:
        template: Functional form. Inputs are all borrowed.
        inplace: In-place form that writes into slot 0. Used only when the
            output has the same shape and dtype as slot 0 (no broadcasting
            into a larger result). None = op has no in-place form.
        view: The functional form returns a view of slot 0 (RESHAPE,
            TRANSPOSE, SPLIT). Slot 0 is then always owned, so an in-place
            op on the view can't corrupt a value that is still needed.
        evaluator: Numpy reference implementation.
        tuple_result: The expression evaluates to a tuple with one entry
            per output, even when there is only one.
    """
    template: Renderer
    evaluator: NumpyEvaluator
    inplace: Renderer | None = None
    view: bool = False
    tuple_result: bool = False


def owns_first_input(node: Node, graph: Graph) -> bool:
    """Whether the node's emitted expression takes ownership of inputs[0]."""
    op_def = OP_REGISTRY[node.op]
    if op_def.view:
        return True
    if op_def.inplace is None or len(node.outputs) != 1 or not node.inputs:
        return False
    src = graph.tensors[node.inputs[0]]
    dst = graph.tensors[node.output]
    return src.shape == dst.shape and src.dtype == dst.dtype


def render(node: Node, graph: Graph, refs: list[str]) -> str:
    """Render a node's expression from already-rendered input references."""
    op_def = OP_REGISTRY[node.op]
    if not op_def.view and op_def.inplace is not None and owns_first_input(node, graph):
        return op_def.inplace(refs, node.attrs)
    return op_def.template(refs, node.attrs)


# ---------------------------------------------------------------------------
# Renderers (too repetitive for inline lambdas)
# ---------------------------------------------------------------------------

def _py(value: Any) -> Any:
    """Numpy scalars as plain Python numbers (no dtype promotion, clean reprs)."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def _lit(value: Any) -> str:
    """Python literal for an attr value."""
    return repr(_py(value))


def _operand(refs: list[str], attrs: dict[str, Any]) -> str:
    """Second operand of a binary op: a tensor reference or attrs["scalar"]."""
    if "scalar" in attrs:
        return _lit(attrs["scalar"])
    return refs[1]


def _binary(fn: str) -> tuple[Renderer, Renderer]:
    functional = lambda r, a: f"torch.{fn}({r[0]}, {_operand(r, a)})"
    inplace = lambda r, a: f"{r[0]}.{fn}_({_operand(r, a)})"
    return functional, inplace


def _unary(fn: str) -> tuple[Renderer, Renderer]:
    functional = lambda r, a: f"torch.{fn}({r[0]})"
    inplace = lambda r, a: f"{r[0]}.{fn}_()"
    return functional, inplace


def _reduce(fn: str) -> Renderer:
    return lambda r, a: (f"torch.{fn}({r[0]}, dim={_lit(a['axis'])}, "
                         f"keepdim={bool(a.get('keepdim', False))})")


# ---------------------------------------------------------------------------
# Evaluator functions (too complex for inline lambdas)
# ---------------------------------------------------------------------------

def _eval_softmax(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x = ins[0]
    axis = attrs["axis"]
    shifted = x - np.max(x, axis=axis, keepdims=True)
    e = np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def _eval_layernorm(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x, gamma, beta = ins[0], ins[1], ins[2]
    eps = attrs.get("eps", 1e-5)
    mean = np.mean(x, axis=-1, keepdims=True)
    var = np.var(x, axis=-1, keepdims=True)
    return (x - mean) / np.sqrt(var + eps) * gamma + beta


def _eval_gelu(ins: list[np.ndarray], attrs: dict[str, Any]) -> np.ndarray:
    x = ins[0]
    return 0.5 * x * (1 + np.tanh(0.7978845608 * (x + 0.044715 * x**3)))


def _eval_split(ins: list[np.ndarray], attrs: dict[str, Any]) -> list[np.ndarray]:
    bounds = np.cumsum(attrs["sizes"])[:-1]
    return np.split(ins[0], bounds, axis=attrs["dim"])


def _scalar_or(ins: list[np.ndarray], attrs: dict[str, Any]):
    return _py(attrs["scalar"]) if "scalar" in attrs else ins[1]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_add, _add_ = _binary("add")
_sub, _sub_ = _binary("sub")
_mul, _mul_ = _binary("mul")
_div, _div_ = _binary("div")
_relu, _relu_ = _unary("relu")
_exp, _exp_ = _unary("exp")
_tanh, _tanh_ = _unary("tanh")
_neg, _neg_ = _unary("neg")

OP_REGISTRY: dict[OpType, OpDef] = {
    # --- Element-wise (in-place on first input when shapes allow) ---
    OpType.ADD:  OpDef(_add, inplace=_add_,
                       evaluator=lambda ins, a: ins[0] + _scalar_or(ins, a)),
    OpType.SUB:  OpDef(_sub, inplace=_sub_,
                       evaluator=lambda ins, a: ins[0] - _scalar_or(ins, a)),
    OpType.MUL:  OpDef(_mul, inplace=_mul_,
                       evaluator=lambda ins, a: ins[0] * _scalar_or(ins, a)),
    OpType.DIV:  OpDef(_div, inplace=_div_,
                       evaluator=lambda ins, a: ins[0] / _scalar_or(ins, a)),
    OpType.RELU: OpDef(_relu, inplace=_relu_,
                       evaluator=lambda ins, a: np.maximum(ins[0], 0)),
    OpType.EXP:  OpDef(_exp, inplace=_exp_,
                       evaluator=lambda ins, a: np.exp(ins[0])),
    OpType.TANH: OpDef(_tanh, inplace=_tanh_,
                       evaluator=lambda ins, a: np.tanh(ins[0])),
    OpType.NEG:  OpDef(_neg, inplace=_neg_,
                       evaluator=lambda ins, a: -ins[0]),
    OpType.POW:  OpDef(lambda r, a: f"torch.pow({r[0]}, {_lit(a['scalar'])})",
                       inplace=lambda r, a: f"{r[0]}.pow_({_lit(a['scalar'])})",
                       evaluator=lambda ins, a: np.power(ins[0], _py(a["scalar"]))),
    OpType.GELU: OpDef(lambda r, a: f"F.gelu({r[0]}, approximate='tanh')",
                       evaluator=_eval_gelu),

    # --- Reductions ---
    OpType.MAX:     OpDef(_reduce("amax"),
                          evaluator=lambda ins, a: np.max(ins[0], axis=a["axis"], keepdims=a.get("keepdim", False))),
    OpType.SUM:     OpDef(_reduce("sum"),
                          evaluator=lambda ins, a: np.sum(ins[0], axis=a["axis"], keepdims=a.get("keepdim", False))),
    OpType.SOFTMAX: OpDef(lambda r, a: f"torch.softmax({r[0]}, dim={_lit(a['axis'])})",
                          evaluator=_eval_softmax),

    # --- MatMul / linear ---
    OpType.MATMUL: OpDef(lambda r, a: f"torch.matmul({r[0]}, {r[1]})",
                         evaluator=lambda ins, a: ins[0] @ ins[1]),
    OpType.LINEAR: OpDef(lambda r, a: f"F.linear({', '.join(r)})",
                         evaluator=lambda ins, a: ins[0] @ ins[1].T + (ins[2] if len(ins) > 2 else 0)),

    # --- Shape ops (views of the first input) ---
    OpType.RESHAPE:   OpDef(lambda r, a: f"{r[0]}.reshape({tuple(int(d) for d in a['shape'])!r})", view=True,
                            evaluator=lambda ins, a: ins[0].reshape(a["shape"])),
    OpType.TRANSPOSE: OpDef(lambda r, a: f"{r[0]}.transpose({a['dim0']}, {a['dim1']})", view=True,
                            evaluator=lambda ins, a: np.swapaxes(ins[0], a["dim0"], a["dim1"])),
    OpType.SPLIT:     OpDef(lambda r, a: f"torch.split({r[0]}, {[int(s) for s in a['sizes']]!r}, dim={int(a['dim'])})",
                            view=True, tuple_result=True, evaluator=_eval_split),
    OpType.CAT:       OpDef(lambda r, a: f"torch.cat([{', '.join(r)}], dim={a['dim']})",
                            evaluator=lambda ins, a: np.concatenate(ins, axis=a["dim"])),

    # --- Normalization ---
    OpType.LAYERNORM: OpDef(lambda r, a: (f"F.layer_norm({r[0]}, {r[1]}.shape, {r[1]}, {r[2]}, "
                                          f"eps={_lit(a.get('eps', 1e-5))})"),
                            evaluator=_eval_layernorm),
}


# ---------------------------------------------------------------------------
# Reference evaluation
# ---------------------------------------------------------------------------

def evaluate(graph: Graph, inputs: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
    """Run the graph with the numpy evaluators and return its outputs.

    Re-definitions simply overwrite the environment entry, which is the
    same binding behaviour the generated code has.
    """
    env: dict[str, np.ndarray] = {}
    for name in graph.inputs:
        if name not in inputs:
            raise ValueError(f"Missing input tensor: '{name}'")
        env[name] = np.asarray(inputs[name])
    for name in graph.constants:
        buffer = graph.tensors[name].buffer
        if buffer is None:
            raise ValueError(f"Constant '{name}' has no data loaded")
        env[name] = buffer

    for node in graph:
        op_def = OP_REGISTRY.get(node.op)
        if op_def is None:
            raise ValueError(f"No definition for op {node.op.name}")
        result = op_def.evaluator([env[name] for name in node.inputs], node.attrs)
        if len(node.outputs) == 1:
            env[node.output] = result
        else:
            for name, value in zip(node.outputs, result):
                env[name] = value

    return {name: env[name] for name in graph.outputs}
