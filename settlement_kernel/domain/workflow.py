"""
Status state machines as data.

A ``Workflow`` lists the states of a document and the moves between them.
It only answers "is this move allowed, and under which guard"; checking
the guard against the document is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Guard:
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    _index: dict[tuple[str, str], Transition] = field(
        init=False, repr=False, compare=False, default_factory=dict,
    )

    def __post_init__(self) -> None:
        known = set(self.states)
        if self.initial_state not in known:
            raise ValueError(f"initial_state '{self.initial_state}' not in states of {self.name}")
        for t in self.transitions:
            if not {t.from_state, t.to_state} <= known:
                raise ValueError(
                    f"Transition {t.from_state}->{t.to_state} references unknown state"
                )
            self._index[(t.from_state, t.to_state)] = t

    def find(self, from_state: str, to_state: str) -> Transition | None:
        return self._index.get((from_state, to_state))

    def actions_from(self, from_state: str) -> tuple[str, ...]:
        """Distinct actions leaving ``from_state``, sorted."""
        return tuple(sorted({t.action for t in self.transitions if t.from_state == from_state}))
