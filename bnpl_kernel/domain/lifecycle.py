"""
Contract lifecycle -- the single authority on legal contract transitions.

Responsibility
--------------
Defines the contract states, the transition table as a frozen ``Workflow``
constant, and ``transition()``, which validates a requested state change and
hands an immutable ``StateTransition`` record to the contract.

Architecture position
---------------------
**Kernel domain layer** -- pure.  ZERO I/O.  No imports from ``db/``,
``services/`` or outer layers.  The ORM ``Contract`` satisfies the
``Transitionable`` protocol; so does any test double.

Invariants enforced
-------------------
* Only edges present in ``CONTRACT_WORKFLOW`` may fire.
* A rejected transition leaves the contract untouched.
* Terminal states (CLOSED, CANCELLED, REFUNDED, DEFAULTED) have no
  outgoing edges.

Callers own money movement.  ``transition()`` must only be called after the
corresponding external effect is confirmed (for example after the escrow
hold succeeded), so a contract never claims a state it has not reached.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID

from bnpl_kernel.exceptions import IllegalTransitionError


class ContractState(str, Enum):
    PRE_APPROVED = "PRE_APPROVED"
    ORDER_CREATED = "ORDER_CREATED"
    CUSTOMER_AUTHORIZED = "CUSTOMER_AUTHORIZED"
    ESCROW_HELD = "ESCROW_HELD"
    DISBURSED = "DISBURSED"
    IN_REPAYMENT = "IN_REPAYMENT"
    CLOSED = "CLOSED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DEFAULTED = "DEFAULTED"


@dataclass(frozen=True)
class Transition:
    """A directed edge of the lifecycle graph."""

    from_state: ContractState
    to_state: ContractState
    action: str


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    Guarantees: ``initial_state`` is a member of ``states``;
    ``terminal_states`` have no outgoing transitions.
    """

    name: str
    description: str
    initial_state: ContractState
    states: tuple[ContractState, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[ContractState, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"Initial state {self.initial_state} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(f"Transition {t} references an unknown state")
            if t.from_state in self.terminal_states:
                raise ValueError(f"Terminal state {t.from_state} has an outgoing edge")

    def targets(self, state: ContractState) -> frozenset[ContractState]:
        return frozenset(t.to_state for t in self.transitions if t.from_state == state)


S = ContractState

CONTRACT_WORKFLOW = Workflow(
    name="bnpl_contract",
    description="Payroll-deduction BNPL contract from pre-approval to closure",
    initial_state=S.PRE_APPROVED,
    states=tuple(S),
    transitions=(
        Transition(S.PRE_APPROVED, S.ORDER_CREATED, "create_order"),
        Transition(S.PRE_APPROVED, S.CANCELLED, "cancel"),
        Transition(S.ORDER_CREATED, S.CUSTOMER_AUTHORIZED, "authorize"),
        Transition(S.ORDER_CREATED, S.CANCELLED, "cancel"),
        Transition(S.CUSTOMER_AUTHORIZED, S.ESCROW_HELD, "hold_funds"),
        Transition(S.CUSTOMER_AUTHORIZED, S.CANCELLED, "cancel"),
        Transition(S.ESCROW_HELD, S.DISBURSED, "release_funds"),
        Transition(S.ESCROW_HELD, S.DISPUTED, "dispute"),
        Transition(S.ESCROW_HELD, S.CANCELLED, "refund_hold"),
        Transition(S.DISBURSED, S.IN_REPAYMENT, "start_repayment"),
        Transition(S.DISBURSED, S.DISPUTED, "dispute"),
        Transition(S.IN_REPAYMENT, S.CLOSED, "repay_in_full"),
        Transition(S.IN_REPAYMENT, S.DISPUTED, "dispute"),
        Transition(S.IN_REPAYMENT, S.DEFAULTED, "default"),
        Transition(S.DISPUTED, S.IN_REPAYMENT, "resolve_dispute"),
        Transition(S.DISPUTED, S.CANCELLED, "cancel"),
        Transition(S.DISPUTED, S.REFUNDED, "refund"),
    ),
    terminal_states=(S.CLOSED, S.CANCELLED, S.REFUNDED, S.DEFAULTED),
)

TRANSITION_TABLE: dict[ContractState, frozenset[ContractState]] = {
    state: CONTRACT_WORKFLOW.targets(state) for state in CONTRACT_WORKFLOW.states
}

TERMINAL_STATES = frozenset(CONTRACT_WORKFLOW.terminal_states)

# Contracts with money out and repayments expected
ACTIVE_STATES = frozenset({S.DISBURSED, S.IN_REPAYMENT})

# States that free the lender's reserved capital on entry
CAPITAL_RELEASING_STATES = frozenset({S.CLOSED, S.CANCELLED, S.REFUNDED})


@dataclass(frozen=True)
class StateTransition:
    """Immutable record of one applied lifecycle transition."""

    contract_id: UUID
    from_state: ContractState
    to_state: ContractState
    reason: str
    actor_id: UUID | None
    occurred_at: datetime


class Transitionable(Protocol):
    id: UUID
    state: str

    def record_transition(self, transition: StateTransition) -> None: ...


def valid_next_states(state: ContractState | str) -> frozenset[ContractState]:
    return TRANSITION_TABLE[ContractState(state)]


def can_transition(from_state: ContractState | str, to_state: ContractState | str) -> bool:
    return ContractState(to_state) in TRANSITION_TABLE[ContractState(from_state)]


def is_terminal(state: ContractState | str) -> bool:
    return ContractState(state) in TERMINAL_STATES


def is_active(state: ContractState | str) -> bool:
    return ContractState(state) in ACTIVE_STATES


def transition(
    contract: Transitionable,
    target_state: ContractState | str,
    reason: str,
    actor_id: UUID | None,
    occurred_at: datetime,
) -> StateTransition:
    """
    Move ``contract`` to ``target_state``.

    Raises:
        IllegalTransitionError: target is not reachable from the current
            state.  The contract is not modified.
    """
    current = ContractState(contract.state)
    target = ContractState(target_state)
    if target not in TRANSITION_TABLE[current]:
        raise IllegalTransitionError(str(contract.id), current.value, target.value)

    record = StateTransition(
        contract_id=contract.id,
        from_state=current,
        to_state=target,
        reason=reason,
        actor_id=actor_id,
        occurred_at=occurred_at,
    )
    contract.record_transition(record)
    return record
