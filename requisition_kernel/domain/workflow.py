"""
Canonical workflow types (``requisition_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for document state machines.  Guard, Transition and
Workflow are defined once; the requisition lifecycle is one instance.
A transition may declare an inventory effect (``deducts_inventory``) and a
reservation effect (``reservation``) which the requisition service applies
generically, so every path that issues stock runs the same code.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
* (from_state, action) identifies at most one transition.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- the owning service does.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``deducts_inventory=True`` marks the transition that permanently takes the
    requisition's materials out of the inventory ledger.  ``reservation`` is
    the reservation status the transition leaves behind (``reserved``,
    ``consumed`` or ``released``), or None when reservations are untouched.
    """
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    deducts_inventory: bool = False
    reservation: str | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"Workflow {self.name}: initial state {self.initial_state!r} not in states"
            )
        seen: set[tuple[str, str]] = set()
        for t in self.transitions:
            for state in (t.from_state, t.to_state):
                if state not in self.states:
                    raise ValueError(
                        f"Workflow {self.name}: transition {t.action!r} references "
                        f"unknown state {state!r}"
                    )
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Workflow {self.name}: terminal state {t.from_state!r} "
                    f"has outgoing transition {t.action!r}"
                )
            if (t.from_state, t.action) in seen:
                raise ValueError(
                    f"Workflow {self.name}: duplicate transition "
                    f"{t.action!r} from {t.from_state!r}"
                )
            seen.add((t.from_state, t.action))

    def find(self, from_state: str, action: str) -> Transition | None:
        """The transition for ``action`` out of ``from_state``, if any."""
        for t in self.transitions:
            if t.from_state == from_state and t.action == action:
                return t
        return None

    def actions_from(self, state: str) -> tuple[str, ...]:
        return tuple(t.action for t in self.transitions if t.from_state == state)

    def sources_of(self, action: str) -> tuple[str, ...]:
        """States from which ``action`` may fire."""
        return tuple(t.from_state for t in self.transitions if t.action == action)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states
