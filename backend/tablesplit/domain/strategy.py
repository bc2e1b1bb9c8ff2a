# backend/tablesplit/domain/strategy.py
from __future__ import annotations

from dataclasses import replace

from tablesplit.domain.models import Participant, SessionStatus, SplitMethod

_AUTO_METHODS = (SplitMethod.EQUAL, SplitMethod.DYNAMIC_EQUAL)


def auto_select_method(
    current: SplitMethod,
    previous_active_count: int,
    active_count: int,
    status: SessionStatus = SessionStatus.ACTIVE,
) -> SplitMethod:
    """
    Flip between EQUAL and DYNAMIC_EQUAL when the table shrinks to one
    diner or grows past one.

    Only acts before payment starts and only on the two automatic
    methods; BY_ITEMS and BY_AMOUNT are explicit user choices.
    """
    if status is not SessionStatus.ACTIVE:
        return current
    if current not in _AUTO_METHODS:
        return current
    if previous_active_count == active_count:
        return current

    if active_count == 1 and current is SplitMethod.DYNAMIC_EQUAL:
        return SplitMethod.EQUAL
    if previous_active_count == 1 and active_count > 1 and current is SplitMethod.EQUAL:
        return SplitMethod.DYNAMIC_EQUAL
    return current


def apply_auto_switch(
    participant: Participant,
    previous_active_count: int,
    active_count: int,
    status: SessionStatus = SessionStatus.ACTIVE,
) -> Participant:
    """
    Return the participant with its split method re-evaluated. Selected
    items, claimed quantities and fixed amount are carried over untouched.
    """
    method = auto_select_method(participant.split_method, previous_active_count, active_count, status)
    if method is participant.split_method:
        return participant
    return replace(participant, split_method=method)
