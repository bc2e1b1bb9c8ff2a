# backend/tablesplit/domain/liveness.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, List

from tablesplit.domain.models import Participant

# Clients ping every 10 seconds; three missed pings make a zombie.
DEFAULT_STALE_AFTER = timedelta(seconds=30)


def select_active(participants: Iterable[Participant]) -> List[Participant]:
    """
    Return the participants that count for splitting.

    Every per-participant money computation goes through here first so
    inactive ("zombie") records never reach a divisor.
    """
    return [p for p in participants if p.is_active is True]


def is_stale(participant: Participant, now: datetime, stale_after: timedelta = DEFAULT_STALE_AFTER) -> bool:
    if participant.last_seen_at is None:
        return False
    return now - participant.last_seen_at > stale_after


def refresh_liveness(
    participants: Iterable[Participant],
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> List[Participant]:
    """
    Return copies with is_active cleared for lapsed heartbeats.

    Participants without a last_seen_at keep their stored flag. Already
    inactive participants are never revived here; only a heartbeat does that.
    """
    refreshed: List[Participant] = []
    for p in participants:
        if p.is_active and is_stale(p, now, stale_after):
            refreshed.append(replace(p, is_active=False))
        else:
            refreshed.append(p)
    return refreshed
