"""Issue status state machine.

new -> investigating -> {resolved, false_positive}
{new, investigating} -> ignored, ignored -> new (unignore)
ignored -> resolved

resolved and false_positive are terminal. Re-detection never changes status.
"""

from watchpost.errors.exceptions import InvalidTransitionError
from watchpost.models.enums import IssueStatus

ALLOWED_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.NEW: frozenset(
        {IssueStatus.INVESTIGATING, IssueStatus.IGNORED, IssueStatus.RESOLVED, IssueStatus.FALSE_POSITIVE}
    ),
    IssueStatus.INVESTIGATING: frozenset(
        {IssueStatus.IGNORED, IssueStatus.RESOLVED, IssueStatus.FALSE_POSITIVE}
    ),
    IssueStatus.IGNORED: frozenset({IssueStatus.NEW, IssueStatus.RESOLVED}),
    IssueStatus.RESOLVED: frozenset(),
    IssueStatus.FALSE_POSITIVE: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return IssueStatus(target) in ALLOWED_TRANSITIONS[IssueStatus(current)]
    except ValueError:
        return False


def ensure_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError("issue", current, target)


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS[IssueStatus(status)]
