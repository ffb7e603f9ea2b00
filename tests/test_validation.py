"""Tests for the validation framework.

Each test constructs a deliberately broken artifact and asserts the
appropriate validator catches it with the right severity.
"""

import numpy as np
import pytest

from forwardgen.codegen import generate
from forwardgen.ir import Graph, OpType
from forwardgen.scope import Scope
from forwardgen.validation import (
    Phase, Severity, ValidationResult, ValidationError, register_validator,
    registered, run_validators,
)

from conftest import build_attention_block, build_branch, build_chain


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _by(results: list[ValidationResult], validator: str,
        severity: Severity | None = None) -> list[ValidationResult]:
    return [r for r in results
            if r.validator == validator and (severity is None or r.severity == severity)]


def _simple_graph() -> Graph:
    """A minimal valid graph: x -> RELU -> y -> RELU -> z."""
    g = Graph("simple")
    g.add_input("x", (4, 64))
    g.add_tensor("y", (4, 64))
    g.add_tensor("z", (4, 64))
    g.outputs = ["z"]
    g.add_node(OpType.RELU, ["x"], "y")
    g.add_node(OpType.RELU, ["y"], "z")
    return g


def _check(graph: Graph) -> list[ValidationResult]:
    return run_validators(Phase.PRE_CODEGEN, graph, fail_on=None)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_validators_registered():
    assert registered(Phase.PRE_CODEGEN) == [
        "structure", "repeated_outputs", "sanitized_collisions", "dead_values",
    ]
    assert registered(Phase.POST_EMIT) == ["outstanding_uses"]


def test_duplicate_registration_rejected():
    with pytest.raises(ValueError, match="already registered"):
        register_validator("structure", Phase.PRE_CODEGEN)(lambda graph: [])
    assert registered(Phase.PRE_CODEGEN).count("structure") == 1


def test_phase_checks_its_own_artifact():
    with pytest.raises(TypeError, match="PRE_CODEGEN checks a Graph, got Scope"):
        run_validators(Phase.PRE_CODEGEN, Scope())
    with pytest.raises(TypeError, match="POST_EMIT checks a Scope, got Graph"):
        run_validators(Phase.POST_EMIT, _simple_graph())


@pytest.mark.parametrize("builder", [_simple_graph, build_chain, build_branch,
                                     build_attention_block])
def test_valid_graphs_are_clean(builder):
    assert _check(builder()) == []


# ---------------------------------------------------------------------------
# structure
# ---------------------------------------------------------------------------

class TestStructure:

    def test_read_before_produce(self):
        g = _simple_graph()
        g.nodes[0].inputs = ["z"]
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("reads 'z' before any node produces it" in r.message for r in errors)

    def test_unknown_input_tensor(self):
        g = _simple_graph()
        g.nodes[1].inputs = ["ghost"]
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("unknown input tensor 'ghost'" in r.message for r in errors)

    def test_output_without_producer(self):
        g = _simple_graph()
        g.add_tensor("w", (4, 64))
        g.outputs.append("w")
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("'w' has no producer" in r.message for r in errors)

    def test_input_rebound_by_node(self):
        g = _simple_graph()
        g.add_node(OpType.RELU, ["z"], "x")
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("Graph input 'x' is produced by node 2" in r.message for r in errors)

    def test_constant_output(self):
        g = _simple_graph()
        g.add_constant("w", np.zeros(2, dtype=np.float32))
        g.outputs.append("w")
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("'w' is a constant" in r.message for r in errors)

    def test_split_arity(self):
        g = Graph()
        g.add_input("x", (4,))
        g.add_tensor("a", (2,))
        g.add_node(OpType.SPLIT, ["x"], ["a"], {"sizes": [2, 2], "dim": 0})
        g.outputs.append("a")
        errors = _by(_check(g), "structure", Severity.ERROR)
        assert any("1 outputs for 2 sizes" in r.message for r in errors)


# ---------------------------------------------------------------------------
# repeated_outputs
# ---------------------------------------------------------------------------

def _repeated_output_graph() -> Graph:
    g = Graph("repeat")
    g.add_input("x", (4,))
    g.add_tensor("a", (2,))
    g.add_node(OpType.SPLIT, ["x"], ["a", "a"], {"sizes": [2, 2], "dim": 0})
    g.outputs.append("a")
    return g


def test_repeated_output_warns():
    warnings = _by(_check(_repeated_output_graph()), "repeated_outputs", Severity.WARNING)
    assert len(warnings) == 1
    assert "produces 'a' more than once" in warnings[0].message


def test_repeated_output_generates_in_normal_mode():
    generated = generate(_repeated_output_graph())
    assert "a, a = torch.split(x.clone(), [2, 2], dim=0)" in generated.source
    assert _by(generated.validation, "repeated_outputs", Severity.WARNING)


def test_repeated_output_fails_strict():
    with pytest.raises(ValidationError) as exc_info:
        generate(_repeated_output_graph(), validation="strict")
    assert exc_info.value.phase == Phase.PRE_CODEGEN


# ---------------------------------------------------------------------------
# sanitized_collisions
# ---------------------------------------------------------------------------

class TestSanitizedCollisions:

    def test_two_names_one_identifier(self):
        g = _simple_graph()
        g.add_tensor("enc.out", (4, 64))
        g.add_tensor("enc/out", (4, 64))
        errors = _by(_check(g), "sanitized_collisions", Severity.ERROR)
        assert len(errors) == 1
        assert "'enc.out', 'enc/out'" in errors[0].message
        assert "'enc_out'" in errors[0].message

    def test_non_identifier(self):
        g = _simple_graph()
        g.add_tensor("0/conv", (1,))
        errors = _by(_check(g), "sanitized_collisions", Severity.ERROR)
        assert any("'0_conv'" in r.message for r in errors)

    def test_keyword(self):
        g = _simple_graph()
        g.add_tensor("lambda", (1,))
        assert _by(_check(g), "sanitized_collisions", Severity.ERROR)

    def test_reserved_name(self):
        g = _simple_graph()
        g.add_tensor("torch", (1,))
        errors = _by(_check(g), "sanitized_collisions", Severity.ERROR)
        assert any("reserved name 'torch'" in r.message for r in errors)

    def test_collision_blocks_generation(self):
        g = _simple_graph()
        g.add_tensor("x.y", (1,))
        g.add_tensor("x/y", (1,))
        with pytest.raises(ValidationError):
            generate(g)


# ---------------------------------------------------------------------------
# dead_values
# ---------------------------------------------------------------------------

def test_dead_value_is_info():
    g = _simple_graph()
    g.add_tensor("unused", (4, 64))
    g.add_node(OpType.EXP, ["x"], "unused")
    results = _check(g)
    infos = _by(results, "dead_values", Severity.INFO)
    assert len(infos) == 1
    assert "'unused' is never used" in infos[0].message
    # INFO never fails generation, even in strict mode
    generate(g, validation="strict")


# ---------------------------------------------------------------------------
# outstanding_uses (POST_EMIT)
# ---------------------------------------------------------------------------

def test_outstanding_uses_reported():
    scope = Scope()
    scope.register_produced("x", 0)
    scope.register_future_use("x", 1)
    scope.register_future_use("x", 2)
    scope.begin_emit()
    scope.resolve_use("x", 1)

    results = run_validators(Phase.POST_EMIT, scope, fail_on=None)
    errors = _by(results, "outstanding_uses", Severity.ERROR)
    assert len(errors) == 1
    assert "'x' produced at position 0 still has 1 registered use(s)" in errors[0].message

    with pytest.raises(ValidationError) as exc_info:
        run_validators(Phase.POST_EMIT, scope)
    assert "outstanding_uses" in str(exc_info.value)


def test_generated_scope_is_fully_resolved():
    generated = generate(build_attention_block())
    assert _by(generated.validation, "outstanding_uses") == []


def test_validation_none_skips_checks():
    g = _repeated_output_graph()
    generated = generate(g, validation="none")
    assert generated.validation == []


def test_result_str():
    r = ValidationResult("structure", Severity.ERROR, "boom")
    assert str(r) == "[ERROR] structure: boom"


def test_results_locate_the_node():
    g = _simple_graph()
    g.add_tensor("unused", (4, 64))
    g.add_node(OpType.EXP, ["x"], "unused")
    (info,) = _by(_check(g), "dead_values")
    assert (info.node_id, info.position) == (2, 2)
    assert str(info) == "[INFO] dead_values (node 2, position 2): EXP output 'unused' is never used"


def test_error_names_the_graph():
    g = _simple_graph()
    g.nodes[0].inputs = ["z"]
    with pytest.raises(ValidationError) as exc_info:
        generate(g)
    err = exc_info.value
    assert err.graph_name == "simple"
    assert str(err).startswith("Validation failed for graph 'simple' at PRE_CODEGEN (1 issue(s)):")
    assert "(node 0, position 0): RELU reads 'z' before any node produces it" in str(err)


def test_outstanding_use_carries_position():
    scope = Scope()
    scope.register_produced("x", 0)
    scope.register_future_use("x", 1)
    scope.begin_emit()
    (result,) = run_validators(Phase.POST_EMIT, scope, fail_on=None)
    assert result.position == 0
    assert result.node_id is None
