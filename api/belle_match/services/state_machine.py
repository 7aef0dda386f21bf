from datetime import datetime

from ..domain import EXPIRABLE_STATES, MatchState


def transition_state(
    current: MatchState,
    action: str,
    now: datetime,
    expires_at: datetime,
    accepted_count: int = 0,
) -> MatchState:
    """Next state of a match attempt. Invalid actions leave the state unchanged.

    ``accepted_count`` is the number of distinct participants that have
    accepted, including the one performing an ``accept``.
    """
    if current.is_terminal:
        return current

    if current in EXPIRABLE_STATES and now > expires_at:
        return MatchState.EXPIRED

    if action == "accept":
        if current in EXPIRABLE_STATES:
            return MatchState.MUTUALLY_ACCEPTED if accepted_count >= 2 else MatchState.PARTIALLY_ACCEPTED
        return current

    if action == "decline":
        if current in EXPIRABLE_STATES:
            return MatchState.DECLINED
        return current

    if action == "expire":
        return current

    if action == "materialize":
        if current == MatchState.MUTUALLY_ACCEPTED:
            return MatchState.MATERIALIZED
        return current

    if action == "fail":
        if current == MatchState.MUTUALLY_ACCEPTED:
            return MatchState.FAILED
        return current

    if action == "cancel":
        return MatchState.CANCELLED

    return current
