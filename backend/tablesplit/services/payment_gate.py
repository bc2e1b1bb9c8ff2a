# backend/tablesplit/services/payment_gate.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from tablesplit.domain.liveness import DEFAULT_STALE_AFTER, refresh_liveness
from tablesplit.domain.reconciliation import (
    PaymentSnapshot,
    RejectionCode,
    SessionState,
    Verdict,
    reconcile,
)

logger = logging.getLogger(__name__)

MAX_READ_ATTEMPTS = 3


class SessionNotFoundError(LookupError):
    """Raised when the snapshot points at a session that does not exist."""


class InconsistentStateError(RuntimeError):
    """Raised when session state kept changing under every read attempt."""


@dataclass(frozen=True)
class GateResult:
    accepted: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    code: Optional[RejectionCode] = None


def _live_state(state: SessionState, now: datetime, stale_after: timedelta) -> SessionState:
    return SessionState(
        session_id=state.session_id,
        bill=state.bill,
        participants=tuple(refresh_liveness(state.participants, now, stale_after)),
        revision=state.revision,
    )


def _reconcile_consistently(repo, snapshot: PaymentSnapshot, now: datetime, stale_after: timedelta) -> Verdict:
    # Re-read until the revision we validated against is still current.
    for attempt in range(1, MAX_READ_ATTEMPTS + 1):
        state = repo.load_session_state(session_id=snapshot.session_id)
        if state is None:
            raise SessionNotFoundError(snapshot.session_id)

        verdict = reconcile(snapshot, _live_state(state, now, stale_after))
        if repo.session_revision(session_id=snapshot.session_id) == state.revision:
            return verdict
        logger.info(
            "session %s changed during validation (attempt %d), re-reading",
            snapshot.session_id,
            attempt,
        )
    raise InconsistentStateError(f"session {snapshot.session_id} did not settle after {MAX_READ_ATTEMPTS} reads")


def validate_payment(
    repo,
    snapshot: PaymentSnapshot,
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> GateResult:
    """
    Run the reconciliation guard for one payment request.

    Read-only: accepting does not charge anything, so retrying the same
    snapshot cannot double-charge. Charging is a separate step that may
    only follow an accepted result.
    """
    now = now or datetime.now(timezone.utc)
    verdict = _reconcile_consistently(repo, snapshot, now, stale_after)

    if not verdict.accepted:
        logger.info(
            "payment rejected session=%s participant=%s code=%s",
            snapshot.session_id,
            snapshot.participant_id,
            verdict.code.value,
        )
        return GateResult(
            accepted=False,
            code=verdict.code,
            payload={"code": verdict.code.value, "message": verdict.message, **verdict.details},
        )

    return GateResult(
        accepted=True,
        payload={
            "success": True,
            "validated": {
                "sessionId": snapshot.session_id,
                "participantId": snapshot.participant_id,
                "amountCents": snapshot.amount_cents,
                "splitMethod": snapshot.split_method.value,
                "timestamp": now.isoformat(),
            },
        },
    )
