"""Identifier sanitation for graph value names.

Graph node names carry structure (`conv1/weight:0`, `encoder.layer.0`)
that isn't valid in a Python identifier. Every name is run through
sanitize() before it reaches the scope or the generated source.
"""

# Separators used in exported graph names. Nothing else is rewritten.
_SEPARATORS = ("/", ":", ".")


def sanitize(raw: str) -> str:
    """Replace graph name separators with underscores.

    Pure and idempotent. Does not check for collisions or keywords; two
    different raw names may map to the same identifier (the
    sanitized_collisions validator reports that case).
    """
    name = raw
    for sep in _SEPARATORS:
        name = name.replace(sep, "_")
    return name
