# backend/tablesplit/domain/reconciliation.py
"""
Server-side re-check of a payment request against live session state.

A client builds a PaymentSnapshot from whatever it last rendered. By the
time it is submitted someone may have left the table, so the snapshot is
never trusted: reconcile() recomputes the share from a SessionState read
at validation time and reports the first mismatch it finds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from tablesplit.domain.liveness import select_active
from tablesplit.domain.models import Bill, Participant, SplitMethod
from tablesplit.domain.split_logic import calculate_dynamic_split, expected_share


class InvalidTransitionError(RuntimeError):
    """Raised when a payment attempt is moved out of order."""


class RejectionCode(str, Enum):
    PARTICIPANT_INACTIVE = "PARTICIPANT_INACTIVE"
    INVALID_PARTICIPANT_COUNT = "INVALID_PARTICIPANT_COUNT"
    PARTICIPANT_COUNT_MISMATCH = "PARTICIPANT_COUNT_MISMATCH"
    INVALID_AMOUNT = "INVALID_AMOUNT"


REJECTION_MESSAGES = {
    RejectionCode.PARTICIPANT_INACTIVE: "Participant is no longer active in this session",
    RejectionCode.INVALID_PARTICIPANT_COUNT: "There are no active participants to split the bill between",
    RejectionCode.PARTICIPANT_COUNT_MISMATCH: "The number of active participants has changed",
    RejectionCode.INVALID_AMOUNT: "Payment amount does not match calculated division",
}


@dataclass(frozen=True)
class PaymentSnapshot:
    """
    Values a client captured when it showed the pay button.

    expected_participant_count and bill_total_cents are only meaningful
    for DYNAMIC_EQUAL.
    """
    session_id: str
    participant_id: str
    amount_cents: int
    split_method: SplitMethod
    expected_participant_count: Optional[int] = None
    bill_total_cents: Optional[int] = None


@dataclass(frozen=True)
class SessionState:
    """
    Point-in-time view of a session: the bill and every participant
    record (active or not). `revision` changes whenever either does.
    """
    session_id: str
    bill: Bill
    participants: Tuple[Participant, ...]
    revision: Any = None


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    code: Optional[RejectionCode] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    expected_share_cents: Optional[int] = None
    active_count: int = 0


def build_snapshot(
    session_id: str,
    participant_id: str,
    split_method: SplitMethod,
    participants: Sequence[Participant],
    bill: Bill,
) -> PaymentSnapshot:
    """
    Build the snapshot a client submits, from its own last-known state.
    """
    amount = expected_share(split_method, bill, participants, participant_id)
    if split_method is SplitMethod.DYNAMIC_EQUAL:
        return PaymentSnapshot(
            session_id=session_id,
            participant_id=participant_id,
            amount_cents=amount,
            split_method=split_method,
            expected_participant_count=len(select_active(participants)),
            bill_total_cents=bill.total_cents,
        )
    return PaymentSnapshot(
        session_id=session_id,
        participant_id=participant_id,
        amount_cents=amount,
        split_method=split_method,
    )


def snapshot_is_stale(snapshot: PaymentSnapshot, participants: Sequence[Participant], bill_total_cents: int) -> bool:
    """
    True if a real-time update invalidated the snapshot on screen. The
    client should warn and rebuild instead of resubmitting.
    """
    if snapshot.split_method is not SplitMethod.DYNAMIC_EQUAL:
        return False
    return (
        snapshot.expected_participant_count != len(select_active(participants))
        or snapshot.bill_total_cents != bill_total_cents
    )


def _reject(code: RejectionCode, *, active_count: int, expected: Optional[int] = None, **details: Any) -> Verdict:
    return Verdict(
        accepted=False,
        code=code,
        message=REJECTION_MESSAGES[code],
        details=details,
        expected_share_cents=expected,
        active_count=active_count,
    )


def reconcile(snapshot: PaymentSnapshot, state: SessionState) -> Verdict:
    """
    Compare a submitted snapshot with freshly read state.

    Checks run in priority order and the first failure wins:
      1. participant missing or inactive   -> PARTICIPANT_INACTIVE
      2. nobody active                     -> INVALID_PARTICIPANT_COUNT
      3. DYNAMIC_EQUAL head count drifted  -> PARTICIPANT_COUNT_MISMATCH
      4. amount differs from server share  -> INVALID_AMOUNT
    Rejections are returned, not raised. Nothing is written.
    """
    active = select_active(state.participants)
    active_count = len(active)

    me = next((p for p in active if p.id == snapshot.participant_id), None)
    if me is None:
        return _reject(RejectionCode.PARTICIPANT_INACTIVE, active_count=active_count)

    # Unreachable while check 1 requires the caller to be active; kept so
    # the guard holds if that check is ever relaxed.
    if active_count == 0:
        return _reject(RejectionCode.INVALID_PARTICIPANT_COUNT, active_count=active_count)

    method = snapshot.split_method
    if method is SplitMethod.DYNAMIC_EQUAL and snapshot.expected_participant_count != active_count:
        return _reject(
            RejectionCode.PARTICIPANT_COUNT_MISMATCH,
            active_count=active_count,
            expectedCount=snapshot.expected_participant_count,
            actualCount=active_count,
        )

    share = expected_share(method, state.bill, state.participants, snapshot.participant_id)
    if snapshot.amount_cents != share:
        if method is SplitMethod.DYNAMIC_EQUAL:
            split = calculate_dynamic_split(state.bill.total_cents, active_count)
            base, with_remainder = split.base_amount_cents, split.with_remainder_cents
        else:
            base = with_remainder = share
        return _reject(
            RejectionCode.INVALID_AMOUNT,
            active_count=active_count,
            expected=share,
            providedAmount=snapshot.amount_cents,
            expectedBaseAmount=base,
            expectedWithRemainder=with_remainder,
        )

    return Verdict(accepted=True, expected_share_cents=share, active_count=active_count)


class AttemptState(str, Enum):
    BUILDING_SNAPSHOT = "BUILDING_SNAPSHOT"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class PaymentAttempt:
    """
    One try at paying: BUILDING_SNAPSHOT -> SUBMITTED -> ACCEPTED | REJECTED.

    A rejected attempt is finished; the client re-syncs and starts a new
    attempt with a fresh snapshot.
    """

    def __init__(self, snapshot: PaymentSnapshot):
        self.snapshot = snapshot
        self.state = AttemptState.BUILDING_SNAPSHOT
        self.verdict: Optional[Verdict] = None

    def submit(self) -> PaymentSnapshot:
        if self.state is not AttemptState.BUILDING_SNAPSHOT:
            raise InvalidTransitionError(f"cannot submit from {self.state.value}")
        self.state = AttemptState.SUBMITTED
        return self.snapshot

    def resolve(self, verdict: Verdict) -> AttemptState:
        if self.state is not AttemptState.SUBMITTED:
            raise InvalidTransitionError(f"cannot resolve from {self.state.value}")
        self.verdict = verdict
        self.state = AttemptState.ACCEPTED if verdict.accepted else AttemptState.REJECTED
        return self.state

    @property
    def may_charge(self) -> bool:
        return self.state is AttemptState.ACCEPTED

    @property
    def needs_resync(self) -> bool:
        return self.state is AttemptState.REJECTED
