"""
Job State Manager
=================

Finite state machine governing all valid job status transitions. Every
status change MUST go through ``validate_transition`` (or
``validate_action``) before being persisted.

State machine overview::

    pending --> confirmed --> in_progress --> awaiting_payment --> completed

    pending     --> cancelled   (customer, provider, admin)
    confirmed   --> cancelled   (provider, admin; customer only before the
                                 quote is accepted)
    in_progress --> cancelled   (provider, admin)

``confirmed --> in_progress`` and ``in_progress --> awaiting_payment`` are
only reachable through handshake verification; ``awaiting_payment -->
completed`` only through the payment collaborator (``system`` actor).

Guards enforce that only the correct actor type can trigger each action.
Non-transition actions (quote submission, code issuance) are validated
against the same table so that a single place decides what an actor may do
in a given state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from src.models.job import JobStatus


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"  # payment collaborator
    ADMIN = "admin"


class JobAction(str, enum.Enum):
    ACCEPT = "accept"
    CANCEL = "cancel"
    SUBMIT_QUOTE = "submit_quote"
    RESPOND_QUOTE = "respond_quote"
    ISSUE_START_CODE = "issue_start_code"
    VERIFY_START_CODE = "verify_start_code"
    ISSUE_END_CODE = "issue_end_code"
    VERIFY_END_CODE = "verify_end_code"
    CONFIRM_PAYMENT = "confirm_payment"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None
    # Set when the rejection is the accepted-quote cancellation gate rather
    # than a plain wrong-state/wrong-actor rejection.
    cancellation_forbidden: bool = False


@dataclass(frozen=True)
class ActionRule:
    from_statuses: frozenset[JobStatus]
    actors: frozenset[ActorType]
    target: JobStatus | None = None
    requires_accepted_quote: bool = False


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

# Each key is the current status, and the value is a set of statuses it can
# transition to. Guards are checked separately.
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {
        JobStatus.CONFIRMED,
        JobStatus.CANCELLED,
    },
    JobStatus.CONFIRMED: {
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELLED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.AWAITING_PAYMENT,
        JobStatus.CANCELLED,
    },
    JobStatus.AWAITING_PAYMENT: {
        JobStatus.COMPLETED,
    },
    # Terminal states
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

ACTION_RULES: dict[JobAction, ActionRule] = {
    JobAction.ACCEPT: ActionRule(
        from_statuses=frozenset({JobStatus.PENDING}),
        actors=frozenset({ActorType.PROVIDER}),
        target=JobStatus.CONFIRMED,
    ),
    JobAction.CANCEL: ActionRule(
        from_statuses=frozenset({
            JobStatus.PENDING,
            JobStatus.CONFIRMED,
            JobStatus.IN_PROGRESS,
        }),
        actors=frozenset({ActorType.CUSTOMER, ActorType.PROVIDER, ActorType.ADMIN}),
        target=JobStatus.CANCELLED,
    ),
    JobAction.SUBMIT_QUOTE: ActionRule(
        from_statuses=frozenset({JobStatus.CONFIRMED}),
        actors=frozenset({ActorType.PROVIDER}),
    ),
    JobAction.RESPOND_QUOTE: ActionRule(
        from_statuses=frozenset({JobStatus.CONFIRMED}),
        actors=frozenset({ActorType.CUSTOMER}),
    ),
    JobAction.ISSUE_START_CODE: ActionRule(
        from_statuses=frozenset({JobStatus.CONFIRMED}),
        actors=frozenset({ActorType.CUSTOMER}),
        requires_accepted_quote=True,
    ),
    JobAction.VERIFY_START_CODE: ActionRule(
        from_statuses=frozenset({JobStatus.CONFIRMED}),
        actors=frozenset({ActorType.PROVIDER}),
        target=JobStatus.IN_PROGRESS,
        requires_accepted_quote=True,
    ),
    JobAction.ISSUE_END_CODE: ActionRule(
        from_statuses=frozenset({JobStatus.IN_PROGRESS}),
        actors=frozenset({ActorType.PROVIDER}),
    ),
    JobAction.VERIFY_END_CODE: ActionRule(
        from_statuses=frozenset({JobStatus.IN_PROGRESS}),
        actors=frozenset({ActorType.CUSTOMER}),
        target=JobStatus.AWAITING_PAYMENT,
    ),
    JobAction.CONFIRM_PAYMENT: ActionRule(
        from_statuses=frozenset({JobStatus.AWAITING_PAYMENT}),
        actors=frozenset({ActorType.SYSTEM}),
        target=JobStatus.COMPLETED,
    ),
}

# The single action that drives each target status.
_ACTION_FOR_TARGET: dict[JobStatus, JobAction] = {
    rule.target: action
    for action, rule in ACTION_RULES.items()
    if rule.target is not None
}


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_customer_cancel(
    current: JobStatus,
    quote_accepted: bool,
) -> TransitionResult:
    """Customer may only cancel until the quote is accepted."""
    if current == JobStatus.PENDING:
        return TransitionResult(allowed=True)
    if current == JobStatus.CONFIRMED and not quote_accepted:
        return TransitionResult(allowed=True)
    return TransitionResult(
        allowed=False,
        reason=(
            f"Customer cannot cancel a job in '{current.value}' status once "
            f"the quote has been accepted."
        ),
        cancellation_forbidden=True,
    )


def _guard_accepted_quote(
    current: JobStatus,
    action: JobAction,
    quote_accepted: bool,
) -> TransitionResult:
    if not quote_accepted:
        return TransitionResult(
            allowed=False,
            reason=f"'{action.value}' requires an accepted quote.",
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_action(
    current_status: JobStatus,
    action: JobAction,
    actor_type: ActorType,
    *,
    quote_accepted: bool = False,
) -> TransitionResult:
    """Validate whether ``actor_type`` may perform ``action`` right now.

    Checks three layers:
    1. Is the action legal from the current status?
    2. Is the actor one the action allows?
    3. Action-specific guards (accepted-quote gate, customer cancellation).
    """
    rule = ACTION_RULES[action]

    # 1. Structural check
    if current_status not in rule.from_statuses:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Cannot '{action.value}' a job in '{current_status.value}' status. "
                f"Allowed from: "
                f"{', '.join(s.value for s in sorted(rule.from_statuses, key=lambda s: s.value))}."
            ),
        )

    # 2. Actor check
    if actor_type not in rule.actors:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Actor '{actor_type.value}' cannot '{action.value}'. "
                f"Allowed actors: "
                f"{', '.join(sorted(a.value for a in rule.actors))}."
            ),
        )

    # 3. Guards
    if action == JobAction.CANCEL and actor_type == ActorType.CUSTOMER:
        return _guard_customer_cancel(current_status, quote_accepted)

    if rule.requires_accepted_quote:
        return _guard_accepted_quote(current_status, action, quote_accepted)

    return TransitionResult(allowed=True)


def validate_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
    *,
    quote_accepted: bool = False,
) -> TransitionResult:
    """Validate whether a job status transition is allowed.

    Returns a ``TransitionResult`` with ``allowed=True`` if the transition
    is permitted, or ``allowed=False`` with a human-readable ``reason``.
    """
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )

    return validate_action(
        current_status,
        _ACTION_FOR_TARGET[new_status],
        actor_type,
        quote_accepted=quote_accepted,
    )


def get_valid_transitions(
    current_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
    *,
    quote_accepted: bool = False,
) -> list[JobStatus]:
    """Return the statuses the given actor can move the job to."""
    candidates = VALID_TRANSITIONS.get(current_status, set())
    valid: list[JobStatus] = []
    for target in candidates:
        result = validate_transition(
            current_status, target, actor_type, quote_accepted=quote_accepted
        )
        if result.allowed:
            valid.append(target)
    return sorted(valid, key=lambda s: s.value)


def get_available_actions(
    current_status: JobStatus,
    actor_type: ActorType,
    *,
    quote_accepted: bool = False,
) -> list[JobAction]:
    """Return every action the actor may take now.

    Useful for UI hints (e.g. showing available buttons to the user).
    """
    return [
        action
        for action in JobAction
        if validate_action(
            current_status, action, actor_type, quote_accepted=quote_accepted
        ).allowed
    ]
