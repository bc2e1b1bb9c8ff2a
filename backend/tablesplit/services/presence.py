# backend/tablesplit/services/presence.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from tablesplit.domain.liveness import DEFAULT_STALE_AFTER, refresh_liveness, select_active
from tablesplit.domain.models import SessionStatus
from tablesplit.domain.strategy import apply_auto_switch

logger = logging.getLogger(__name__)


def sync_auto_switch(
    repo,
    session_id: str,
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> int:
    """
    Compare the live head count with the one stored for the session and
    re-evaluate EQUAL/DYNAMIC_EQUAL for everyone still at the table when
    they differ. Returns how many participants were switched.

    The stored count is what makes silent drop-outs visible: a diner whose
    heartbeats lapse never calls leave, so the next heartbeat from anyone
    else is where the smaller table is noticed.
    """
    now = now or datetime.now(timezone.utc)
    state = repo.load_session_state(session_id=session_id)
    if state is None:
        return 0
    active = select_active(refresh_liveness(state.participants, now, stale_after))
    previous_count = repo.get_recorded_active_count(session_id=session_id)
    if previous_count == len(active):
        return 0
    repo.record_active_count(session_id=session_id, active_count=len(active))
    if previous_count is None:
        return 0

    status = repo.get_session_status(session_id=session_id)
    if status is not SessionStatus.ACTIVE:
        return 0

    switched = 0
    for participant in active:
        updated = apply_auto_switch(participant, previous_count, len(active), status)
        if updated is not participant:
            repo.set_split_method(participant_id=participant.id, split_method=updated.split_method)
            switched += 1
    if switched:
        logger.info(
            "session %s: active count %d -> %d, switched split method for %d participant(s)",
            session_id,
            previous_count,
            len(active),
            switched,
        )
    return switched


def record_heartbeat(
    repo,
    session_id: str,
    participant_id: str,
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> bool:
    """
    Keep a participant alive. A heartbeat from a zombie revives it; any
    heartbeat may also be the first to see that someone else lapsed.
    """
    if not repo.record_heartbeat(session_id=session_id, participant_id=participant_id):
        return False
    sync_auto_switch(repo, session_id, now=now, stale_after=stale_after)
    return True


def leave_session(
    repo,
    session_id: str,
    participant_id: str,
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> bool:
    """
    Explicit leave signal: flag the participant inactive (the row stays)
    and re-evaluate the split method for whoever remains.
    """
    if not repo.mark_participant_left(session_id=session_id, participant_id=participant_id):
        return False
    sync_auto_switch(repo, session_id, now=now, stale_after=stale_after)
    return True
