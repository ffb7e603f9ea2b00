"""Ownership ledger: decides clone vs. move for every value reference.

Generated forward passes reference named tensors. A reference that is the
value's last use can hand the tensor over (in-place kernels may then
overwrite it); any earlier reference has to clone. The Scope answers that
question with a two-pass protocol over the ordered node list:

    scope = Scope()
    # build: declare producers and every future use, in sequence order
    scope.register_produced("x", 0)
    scope.register_future_use("x", 1)
    scope.register_future_use("x", 2)
    scope.begin_emit()
    # emit: resolve each use as the code is written
    scope.resolve_use("x", 1)   # Decision(DUPLICATE, "x")  -> x.clone()
    scope.resolve_use("x", 2)   # Decision(MOVE, "x")       -> x

A name can be produced several times (shadowing). Each producer event is a
Generation; a use at position p binds to the generation with the largest
position <= p, so a re-definition hides the earlier value from later uses.

One Scope per graph. It is not shared across graphs or threads.
"""

from dataclasses import dataclass
from enum import Enum, auto

from .errors import PhaseViolation, UnknownVariable, UseBeforeRegistration
from .naming import sanitize


class ScopePhase(Enum):
    """Which half of the protocol the scope accepts calls for."""
    BUILDING = auto()   # register_produced / register_future_use
    EMITTING = auto()   # resolve_use


class DecisionKind(Enum):
    DUPLICATE = auto()  # value still needed later: emit a cloning reference
    MOVE      = auto()  # last use: emit a consuming reference


@dataclass(frozen=True)
class Decision:
    """Outcome of resolving one use of a value."""
    kind: DecisionKind
    name: str           # sanitized identifier
    position: int

    @property
    def is_move(self) -> bool:
        return self.kind == DecisionKind.MOVE

    def render(self, duplicate: str = "{name}.clone()", move: str = "{name}") -> str:
        """Render the reference expression for this use.

        The templates are format strings with a single `{name}` field.
        """
        template = move if self.is_move else duplicate
        return template.format(name=self.name)

    def __str__(self) -> str:
        return self.render()


@dataclass
class Generation:
    """One producer event for a name: where it was produced, how many uses remain."""
    position: int
    pending_uses: int = 0

    @property
    def exhausted(self) -> bool:
        return self.pending_uses == 0


@dataclass
class ScopeEvent:
    """Record of a single ledger operation (for verbose/diagnostic output)."""
    kind: str           # "produce", "future_use", "use"
    name: str
    position: int
    pending: int        # counter value after the operation
    decision: DecisionKind | None = None

    def __str__(self) -> str:
        if self.kind == "use":
            outcome = "move" if self.decision == DecisionKind.MOVE else "clone"
            return f"[scope] use {self.name}@{self.position} -> {outcome} ({self.pending} left)"
        if self.kind == "future_use":
            return f"[scope] future use {self.name}@{self.position} ({self.pending} pending)"
        return f"[scope] produce {self.name}@{self.position}"


class Scope:
    """Per-graph ledger mapping each name to its position-ordered generations."""

    def __init__(self, log: list[ScopeEvent] | None = None) -> None:
        self._variables: dict[str, list[Generation]] = {}
        self._phase = ScopePhase.BUILDING
        self._log = log
        self._last_produced: int | None = None

    # --- Phase control ---

    @property
    def phase(self) -> ScopePhase:
        return self._phase

    def begin_emit(self) -> None:
        """Close the build phase. All future uses must be registered by now."""
        if self._phase != ScopePhase.BUILDING:
            raise PhaseViolation("begin_emit", self._phase.name)
        self._phase = ScopePhase.EMITTING

    def _require(self, phase: ScopePhase, operation: str, name: str,
                 position: int) -> None:
        if self._phase != phase:
            raise PhaseViolation(operation, self._phase.name, name, position)

    # --- Build phase ---

    def register_produced(self, name: str, position: int) -> None:
        """Declare that `name` is (re-)produced by the node at `position`.

        Registering the same (name, position) again is a no-op: the counter
        is left untouched. Otherwise `position` must be >= every position
        produced so far in this scope, for any name.
        """
        self._require(ScopePhase.BUILDING, "register_produced", name, position)
        ident = sanitize(name)
        generations = self._variables.get(ident, [])

        for gen in generations:
            if gen.position == position:
                return

        if self._last_produced is not None and position < self._last_produced:
            raise ValueError(
                f"'{ident}' produced at position {position} after a producer "
                f"at position {self._last_produced}"
            )

        self._variables.setdefault(ident, []).append(Generation(position))
        self._last_produced = position
        self._record("produce", ident, position, 0)

    def register_future_use(self, name: str, position: int) -> None:
        """Count one future use of `name` by the node at `position`.

        Must be called once per consumption edge, for the whole sequence,
        before begin_emit().
        """
        self._require(ScopePhase.BUILDING, "register_future_use", name, position)
        ident = sanitize(name)
        gen = self._visible(ident, position)
        gen.pending_uses += 1
        self._record("future_use", ident, position, gen.pending_uses)

    # --- Emit phase ---

    def resolve_use(self, name: str, position: int) -> Decision:
        """Consume one registered use of `name` at `position`.

        Returns MOVE when this is the last pending use of the visible
        generation, DUPLICATE otherwise.
        """
        self._require(ScopePhase.EMITTING, "resolve_use", name, position)
        ident = sanitize(name)
        gen = self._visible(ident, position)
        if gen.exhausted:
            raise UseBeforeRegistration(ident, position)

        gen.pending_uses -= 1
        kind = DecisionKind.DUPLICATE if gen.pending_uses > 0 else DecisionKind.MOVE
        self._record("use", ident, position, gen.pending_uses, kind)
        return Decision(kind=kind, name=ident, position=position)

    # --- Lookups ---

    def _visible(self, ident: str, position: int) -> Generation:
        """Find the generation with the largest position <= `position`.

        Linear reverse scan: names rarely have more than one or two
        generations. A bisect on position would also work.
        """
        generations = self._variables.get(ident)
        if not generations:
            raise UnknownVariable(ident, position)
        for gen in reversed(generations):
            if gen.position <= position:
                return gen
        raise UnknownVariable(ident, position)

    def generations(self, name: str) -> list[Generation]:
        """Generations registered for `name`, oldest first (copies)."""
        ident = sanitize(name)
        if ident not in self._variables:
            raise UnknownVariable(ident)
        return [Generation(g.position, g.pending_uses) for g in self._variables[ident]]

    def pending(self, name: str, position: int) -> int:
        """Pending uses of the generation of `name` visible at `position`."""
        return self._visible(sanitize(name), position).pending_uses

    def outstanding(self) -> list[tuple[str, Generation]]:
        """Generations that still have pending uses, in name order."""
        return [
            (ident, Generation(g.position, g.pending_uses))
            for ident in sorted(self._variables)
            for g in self._variables[ident]
            if not g.exhausted
        ]

    def names(self) -> list[str]:
        return list(self._variables)

    def __contains__(self, name: str) -> bool:
        return sanitize(name) in self._variables

    def __len__(self) -> int:
        return len(self._variables)

    def _record(self, kind: str, ident: str, position: int, pending: int,
                decision: DecisionKind | None = None) -> None:
        if self._log is not None:
            self._log.append(ScopeEvent(kind, ident, position, pending, decision))
