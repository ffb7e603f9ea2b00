"""Identifier sanitation tests."""

import pytest

from forwardgen.naming import sanitize


@pytest.mark.parametrize("raw, expected", [
    ("conv1/weight:0", "conv1_weight_0"),
    ("encoder.layer.0.attn", "encoder_layer_0_attn"),
    ("plain", "plain"),
    ("a-b c", "a-b c"),          # only / : . are rewritten
    ("", ""),
])
def test_sanitize(raw, expected):
    assert sanitize(raw) == expected


@pytest.mark.parametrize("raw", ["conv1/weight:0", "a..b//c::d", "x_y"])
def test_sanitize_idempotent(raw):
    assert sanitize(sanitize(raw)) == sanitize(raw)


def test_sanitize_can_collide():
    """Collisions are reported by the sanitized_collisions validator, not here."""
    assert sanitize("a.b") == sanitize("a/b") == "a_b"
