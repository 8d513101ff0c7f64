"""Validation session lifecycle.

pending -> analyzing -> extracting_claims -> verifying -> ready_for_review
-> reviewing -> approved | rejected. Any non-terminal state may expire; any
pipeline state may fail. Transitions are applied by the session repository
with a conditional UPDATE over ``allowed_sources(target)``.
"""

from typing import Dict, FrozenSet, List

from factcheck.core.exceptions import StateTransitionError
from factcheck.schemas.validation import ValidationStatus

S = ValidationStatus

TERMINAL_STATES: FrozenSet[ValidationStatus] = frozenset({S.APPROVED, S.REJECTED, S.EXPIRED, S.FAILED})

PIPELINE_STATES: FrozenSet[ValidationStatus] = frozenset({S.PENDING, S.ANALYZING, S.EXTRACTING_CLAIMS, S.VERIFYING})

REVIEW_STATES: FrozenSet[ValidationStatus] = frozenset({S.READY_FOR_REVIEW, S.REVIEWING})

_FORWARD: Dict[ValidationStatus, FrozenSet[ValidationStatus]] = {
    S.PENDING: frozenset({S.ANALYZING}),
    S.ANALYZING: frozenset({S.EXTRACTING_CLAIMS}),
    S.EXTRACTING_CLAIMS: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.READY_FOR_REVIEW}),
    S.READY_FOR_REVIEW: frozenset({S.REVIEWING}),
    S.REVIEWING: frozenset({S.APPROVED, S.REJECTED}),
}


def _targets(source: ValidationStatus) -> FrozenSet[ValidationStatus]:
    if source in TERMINAL_STATES:
        return frozenset()
    targets = set(_FORWARD.get(source, ()))
    targets.add(S.EXPIRED)
    if source in PIPELINE_STATES:
        targets.add(S.FAILED)
    return frozenset(targets)


TRANSITIONS: Dict[ValidationStatus, FrozenSet[ValidationStatus]] = {status: _targets(status) for status in S}


def is_terminal(status: ValidationStatus | str) -> bool:
    return ValidationStatus(status) in TERMINAL_STATES


def can_transition(source: ValidationStatus | str, target: ValidationStatus | str) -> bool:
    return ValidationStatus(target) in TRANSITIONS[ValidationStatus(source)]


def allowed_sources(target: ValidationStatus | str) -> List[ValidationStatus]:
    """States from which ``target`` may be entered, in declaration order."""
    target = ValidationStatus(target)
    return [source for source in S if target in TRANSITIONS[source]]


def ensure_transition(source: ValidationStatus | str, target: ValidationStatus | str) -> None:
    """Raise StateTransitionError unless source -> target is a legal edge."""
    if not can_transition(source, target):
        raise StateTransitionError(
            f"Cannot move session from {ValidationStatus(source).value} to {ValidationStatus(target).value}",
            current_status=ValidationStatus(source).value,
        )


def ensure_not_terminal(status: ValidationStatus | str, action: str) -> None:
    if is_terminal(status):
        raise StateTransitionError(
            f"Session is {ValidationStatus(status).value}; {action} is no longer allowed",
            current_status=ValidationStatus(status).value,
        )
