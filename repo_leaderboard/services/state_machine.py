"""Repository lifecycle transitions.

``pending -> commits_processing -> users_processing -> completed`` is the
happy path. Every transition is a single conditional UPDATE, so two workers
racing on the same repository cannot both win.
"""

from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from repo_leaderboard.core.exceptions import InvalidStateTransitionError
from repo_leaderboard.db.models.repository import Repository, RepositoryState

logger = structlog.get_logger()

S = RepositoryState

# target -> states it may be entered from
ALLOWED_TRANSITIONS: dict[RepositoryState, frozenset[RepositoryState]] = {
    # retry of a failed repository; stuck commit job reset
    S.PENDING: frozenset({S.FAILED, S.COMMITS_PROCESSING}),
    S.COMMITS_PROCESSING: frozenset({S.PENDING}),
    S.USERS_PROCESSING: frozenset({S.COMMITS_PROCESSING}),
    # empty history skips identity resolution; refresh promotes partial results
    S.COMPLETED: frozenset({S.USERS_PROCESSING, S.COMMITS_PROCESSING, S.COMPLETED_PARTIAL}),
    S.COMPLETED_PARTIAL: frozenset({S.USERS_PROCESSING}),
    S.FAILED: frozenset({S.COMMITS_PROCESSING, S.USERS_PROCESSING}),
}


def can_transition(current: RepositoryState | str, target: RepositoryState) -> bool:
    return RepositoryState(current) in ALLOWED_TRANSITIONS[target]


class RepositoryStateMachine:
    """Applies state transitions with compare-and-set semantics."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def try_transition(
        self,
        repository_id: int,
        target: RepositoryState,
        from_states: set[RepositoryState] | None = None,
        **values: Any,
    ) -> bool:
        """Move to ``target`` if the current state allows it.

        ``from_states`` narrows the allowed sources further. Extra keyword
        arguments are written in the same UPDATE. Returns False when the
        repository was not in an allowed source state.
        """
        allowed = ALLOWED_TRANSITIONS[target]
        if from_states is not None:
            allowed = allowed & frozenset(from_states)
        sources = sorted(state.value for state in allowed)
        if not sources:
            return False
        result = self.db.execute(
            update(Repository)
            .where(Repository.id == repository_id, Repository.state.in_(sources))
            .values(state=target.value, **values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            return False
        logger.info("Repository state changed", repository_id=repository_id, state=target.value)
        return True

    def transition(
        self,
        repository_id: int,
        target: RepositoryState,
        from_states: set[RepositoryState] | None = None,
        **values: Any,
    ) -> None:
        """Like try_transition, but raise InvalidStateTransitionError on refusal."""
        if not self.try_transition(repository_id, target, from_states, **values):
            current = self.db.execute(
                select(Repository.state).where(Repository.id == repository_id)
            ).scalar_one_or_none()
            raise InvalidStateTransitionError(repository_id, current, target.value)
