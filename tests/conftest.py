"""Shared graph builders and helpers for the test suite.

pytest discovers conftest.py automatically — fixtures defined here are
available to all test files in this directory without explicit imports.
The plain builder functions are imported directly (`from conftest import ...`).
"""

import numpy as np
import pytest
import torch

from forwardgen.codegen import build_module, generate
from forwardgen.ir import Graph, OpType
from forwardgen.ops import evaluate


# ---------------------------------------------------------------------------
# Graph builders
# ---------------------------------------------------------------------------

def build_chain() -> Graph:
    """x -> ADD(x, bias) -> EXP -> RELU -> r

    Three element-wise ops in a row, all same shape. Every intermediate has
    exactly one reader, so each is moved into the next in-place op.
    """
    g = Graph("chain")
    g.add_input("x", (2, 8))
    g.add_constant("bias", np.linspace(-1, 1, 8, dtype=np.float32))

    g.add_tensor("a", (2, 8))
    g.add_node(OpType.ADD, ["x", "bias"], "a")

    g.add_tensor("e", (2, 8))
    g.add_node(OpType.EXP, ["a"], "e")

    g.add_tensor("r", (2, 8))
    g.add_node(OpType.RELU, ["e"], "r")
    g.outputs.append("r")
    return g


def build_branch() -> Graph:
    """x -> ADD -> a, then a read by both EXP and RELU (both are outputs).

    The first reader of 'a' must clone it; the second gets it.
    """
    g = Graph("branch")
    g.add_input("x", (2, 8))
    g.add_constant("bias", np.ones(8, dtype=np.float32))

    g.add_tensor("a", (2, 8))
    g.add_node(OpType.ADD, ["x", "bias"], "a")

    g.add_tensor("e", (2, 8))
    g.add_node(OpType.EXP, ["a"], "e")

    g.add_tensor("r", (2, 8))
    g.add_node(OpType.RELU, ["a"], "r")

    g.outputs.extend(["e", "r"])
    return g


def build_shadowed() -> Graph:
    """x -> RELU -> h, then h rebound by EXP(h), then y = h + x.

    'h' has two generations (positions 1 and 2). 'x' is read at the start
    and again at the end, and is never mutated because the caller owns it.
    """
    g = Graph("shadowed")
    g.add_input("x", (4,))

    g.add_tensor("h", (4,))
    g.add_node(OpType.RELU, ["x"], "h")
    g.add_node(OpType.EXP, ["h"], "h")

    g.add_tensor("y", (4,))
    g.add_node(OpType.ADD, ["h", "x"], "y")
    g.outputs.append("y")
    return g


def build_split_cat() -> Graph:
    """x -> SPLIT -> (p, q), p -> RELU -> pr, CAT(pr, q) -> out."""
    g = Graph("split_cat")
    g.add_input("x", (4, 6))

    g.add_tensor("p", (4, 2))
    g.add_tensor("q", (4, 4))
    g.add_node(OpType.SPLIT, ["x"], ["p", "q"], {"sizes": [2, 4], "dim": 1})

    g.add_tensor("pr", (4, 2))
    g.add_node(OpType.RELU, ["p"], "pr")

    g.add_tensor("out", (4, 6))
    g.add_node(OpType.CAT, ["pr", "q"], "out", {"dim": 1})
    g.outputs.append("out")
    return g


def build_attention_block(seed: int = 0) -> Graph:
    """Single-head self-attention with a residual and a GELU MLP.

    Exported-style names (`attn/q_proj.weight:0`) exercise sanitation, and
    'h' is read by several nodes so it is cloned before each owned read.
    """
    rng = np.random.default_rng(seed)
    S, D = 6, 8

    def w(*shape):
        return (rng.standard_normal(shape) * 0.3).astype(np.float32)

    g = Graph("attention_block")
    g.add_input("tokens", (S, D))
    g.add_constant("ln.weight", np.ones(D, dtype=np.float32))
    g.add_constant("ln.bias", np.zeros(D, dtype=np.float32))
    for proj in ("q", "k", "v"):
        g.add_constant(f"attn/{proj}_proj.weight:0", w(D, D))
        g.add_constant(f"attn/{proj}_proj.bias:0", w(D))
    g.add_constant("mlp/fc.weight:0", w(D, D))

    g.add_tensor("h", (S, D))
    g.add_node(OpType.LAYERNORM, ["tokens", "ln.weight", "ln.bias"], "h", {"eps": 1e-5})

    for proj in ("q", "k", "v"):
        g.add_tensor(f"attn/{proj}", (S, D))
        g.add_node(OpType.LINEAR,
                   ["h", f"attn/{proj}_proj.weight:0", f"attn/{proj}_proj.bias:0"],
                   f"attn/{proj}")

    g.add_tensor("attn/kt", (D, S))
    g.add_node(OpType.TRANSPOSE, ["attn/k"], "attn/kt", {"dim0": 0, "dim1": 1})
    g.add_tensor("attn/scores", (S, S))
    g.add_node(OpType.MATMUL, ["attn/q", "attn/kt"], "attn/scores")
    g.add_tensor("attn/scaled", (S, S))
    g.add_node(OpType.MUL, ["attn/scores"], "attn/scaled", {"scalar": 1.0 / np.sqrt(D)})
    g.add_tensor("attn/probs", (S, S))
    g.add_node(OpType.SOFTMAX, ["attn/scaled"], "attn/probs", {"axis": -1})
    g.add_tensor("attn/out", (S, D))
    g.add_node(OpType.MATMUL, ["attn/probs", "attn/v"], "attn/out")

    g.add_tensor("resid", (S, D))
    g.add_node(OpType.ADD, ["attn/out", "tokens"], "resid")

    g.add_tensor("mlp/fc", (S, D))
    g.add_node(OpType.LINEAR, ["resid", "mlp/fc.weight:0"], "mlp/fc")
    g.add_tensor("mlp/act", (S, D))
    g.add_node(OpType.GELU, ["mlp/fc"], "mlp/act")

    g.add_tensor("block.out", (S, D))
    g.add_node(OpType.ADD, ["resid", "mlp/act"], "block.out")

    g.add_tensor("flat", (S * D,))
    g.add_node(OpType.RESHAPE, ["block.out"], "flat", {"shape": (S * D,)})
    g.outputs.append("flat")
    return g


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(1234)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def random_inputs(graph: Graph, rng: np.random.Generator) -> dict[str, np.ndarray]:
    """One float32 array per graph input, shaped from the tensor registry."""
    return {
        name: rng.standard_normal(graph.tensors[name].shape).astype(np.float32)
        for name in graph.inputs
    }


def run_generated(graph: Graph, inputs: dict[str, np.ndarray], **kwargs) -> dict[str, np.ndarray]:
    """Full pipeline: generate -> build module -> run, outputs as numpy."""
    generated = generate(graph, **kwargs)
    module = build_module(generated, graph)
    args = [torch.from_numpy(inputs[name].copy()) for name in graph.inputs]
    with torch.no_grad():
        result = module(*args)
    if not isinstance(result, tuple):
        result = (result,)
    return {name: value.numpy() for name, value in zip(graph.outputs, result)}


def assert_matches_reference(graph: Graph, inputs: dict[str, np.ndarray],
                             atol: float = 1e-5) -> None:
    """Generated module output must match the numpy reference evaluator."""
    expected = evaluate(graph, inputs)
    actual = run_generated(graph, inputs)
    for name in graph.outputs:
        np.testing.assert_allclose(actual[name], expected[name], atol=atol,
                                   err_msg=f"output '{name}'")
