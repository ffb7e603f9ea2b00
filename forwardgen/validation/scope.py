"""Scope-level validators (POST_EMIT).

Run after every use has been resolved. A generation that still holds
pending uses means the build phase registered a use the emit phase never
wrote out, so the last reference that was emitted may have cloned a value
it could have moved.
"""

from ..scope import Scope
from .core import Phase, Severity, ValidationResult, register_validator


@register_validator("outstanding_uses", Phase.POST_EMIT)
def check_outstanding_uses(scope: Scope) -> list[ValidationResult]:
    results = []
    for name, gen in scope.outstanding():
        results.append(ValidationResult(
            "outstanding_uses", Severity.ERROR,
            f"'{name}' produced at position {gen.position} still has "
            f"{gen.pending_uses} registered use(s) that were never emitted",
            position=gen.position,
        ))
    return results
