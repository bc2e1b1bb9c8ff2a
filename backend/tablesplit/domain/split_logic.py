# backend/tablesplit/domain/split_logic.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

from tablesplit.domain.liveness import select_active
from tablesplit.domain.models import Bill, BillItem, Participant, SplitMethod
from tablesplit.domain.money import MoneyError, apply_percentage, divide_evenly


class SplitLogicError(ValueError):
    """Raised when split inputs are invalid."""


@dataclass(frozen=True)
class DynamicSplit:
    """
    Even split of a bill among the active participants.

    base_amount_cents * participant_count + remainder_cents == total_cents
    """
    base_amount_cents: int
    remainder_cents: int
    total_cents: int
    participant_count: int

    @property
    def with_remainder_cents(self) -> int:
        return self.base_amount_cents + self.remainder_cents


@dataclass(frozen=True)
class AmountCheck:
    amount_cents: int
    remaining_cents: int
    exceeds_remaining: bool


@dataclass(frozen=True)
class PaymentSummary:
    subtotal_cents: int
    tip_cents: int
    total_cents: int
    tip_percentage: Union[int, float]


def calculate_dynamic_split(total_cents: int, active_count: int) -> DynamicSplit:
    """
    Split total_cents among active_count payers.

      calculate_dynamic_split(1000, 3) -> base 333, remainder 1
      calculate_dynamic_split(1000, 0) -> base 0, remainder 0
    """
    try:
        division = divide_evenly(total_cents, active_count)
    except MoneyError as e:
        raise SplitLogicError(str(e)) from e

    return DynamicSplit(
        base_amount_cents=division.base_amount_cents,
        remainder_cents=division.remainder_cents,
        total_cents=total_cents,
        participant_count=max(active_count, 0),
    )


def _payer_order_key(p: Participant):
    # host first, then earliest joiner, then id
    return (not p.is_host, p.joined_at, p.id)


def remainder_payer(participants: Iterable[Participant]) -> Optional[Participant]:
    """
    The single active participant who carries the leftover cents.

    Recomputed from scratch on every call: if the host drops out the
    earliest remaining joiner takes over.
    """
    active = select_active(participants)
    if not active:
        return None
    return min(active, key=_payer_order_key)


def get_my_share(total_cents: int, participants: Sequence[Participant], participant_id: str) -> int:
    """
    DYNAMIC_EQUAL share for one participant, in cents.

    Inactive or unknown participants owe 0. The remainder payer owes
    base + remainder, everybody else owes base.
    """
    active = select_active(participants)
    split = calculate_dynamic_split(total_cents, len(active))

    me = next((p for p in active if p.id == participant_id), None)
    if me is None:
        return 0

    payer = min(active, key=_payer_order_key)
    if payer.id == me.id:
        return split.with_remainder_cents
    return split.base_amount_cents


def dynamic_shares(total_cents: int, participants: Sequence[Participant]) -> Dict[str, int]:
    """
    Shares of every active participant, keyed by participant id.
    Inactive participants are left out entirely.
    """
    active = select_active(participants)
    split = calculate_dynamic_split(total_cents, len(active))
    if not active:
        return {}

    payer = min(active, key=_payer_order_key)
    return {
        p.id: split.with_remainder_cents if p.id == payer.id else split.base_amount_cents
        for p in active
    }


def items_share(
    items: Sequence[BillItem],
    selected_item_ids: Iterable[str],
    claimed_quantities: Optional[Mapping[str, int]] = None,
) -> int:
    """
    BY_ITEMS share: sum of unit price * claimed quantity over the selected
    items. An item with no claimed quantity counts the full line; a claim of
    0 counts nothing. Claims beyond the line quantity are rejected. Ids not
    on the bill are ignored.
    """
    claimed_quantities = claimed_quantities or {}
    items_by_id = {item.id: item for item in items}

    total = 0
    for item_id in selected_item_ids:
        item = items_by_id.get(item_id)
        if item is None:
            continue
        qty = claimed_quantities.get(item_id)
        if qty is None:
            qty = item.quantity
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 0:
            raise SplitLogicError(f"claimed quantity for item {item_id} must be an int >= 0")
        if qty > item.quantity:
            raise SplitLogicError(
                f"claimed quantity {qty} for item {item_id} exceeds the {item.quantity} ordered"
            )
        total += item.unit_price_cents * qty
    return total


def check_fixed_amount(amount_cents: int, bill_total_cents: int, claimed_by_others_cents: int = 0) -> AmountCheck:
    """
    BY_AMOUNT: report whether a typed amount exceeds what is still
    unclaimed. The amount is flagged, never clamped.
    """
    for name, value in (
        ("amount_cents", amount_cents),
        ("bill_total_cents", bill_total_cents),
        ("claimed_by_others_cents", claimed_by_others_cents),
    ):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise SplitLogicError(f"{name} must be an int >= 0")

    remaining = max(bill_total_cents - claimed_by_others_cents, 0)
    return AmountCheck(
        amount_cents=amount_cents,
        remaining_cents=remaining,
        exceeds_remaining=amount_cents > remaining,
    )


def claimed_by_others_cents(bill: Bill, participants: Sequence[Participant], participant_id: str) -> int:
    """
    Cents other active participants have already claimed explicitly, by
    typed amount or by picked items. Even-split methods claim nothing.
    """
    claimed = 0
    for p in select_active(participants):
        if p.id == participant_id:
            continue
        if p.split_method is SplitMethod.BY_AMOUNT:
            claimed += p.fixed_amount_cents
        elif p.split_method is SplitMethod.BY_ITEMS:
            claimed += items_share(bill.items, p.selected_item_ids, p.claimed_quantities)
    return claimed


def equal_share(total_cents: int) -> int:
    """EQUAL: a single payer covers the whole bill."""
    return calculate_dynamic_split(total_cents, 1).with_remainder_cents


def expected_share(
    method: SplitMethod,
    bill: Bill,
    participants: Sequence[Participant],
    participant_id: str,
) -> int:
    """
    What the server believes participant_id owes under `method`.
    """
    if method is SplitMethod.DYNAMIC_EQUAL:
        return get_my_share(bill.total_cents, participants, participant_id)
    if method is SplitMethod.EQUAL:
        return equal_share(bill.total_cents)

    me = next((p for p in participants if p.id == participant_id), None)
    if me is None:
        return 0
    if method is SplitMethod.BY_ITEMS:
        return items_share(bill.items, me.selected_item_ids, me.claimed_quantities)
    if method is SplitMethod.BY_AMOUNT:
        return me.fixed_amount_cents
    raise SplitLogicError(f"unknown split method: {method}")


def validate_split_sum(total_cents: int, shares: Iterable[int]) -> bool:
    """
    True iff the shares add up to exactly total_cents. Over- and
    underpayment are both invalid.
    """
    return sum(shares) == total_cents


def summarize_payment(share_cents: int, tip_percentage: Union[int, float] = 0) -> PaymentSummary:
    """
    Subtotal, tip and grand total for the payment screen.
    """
    try:
        tip = apply_percentage(share_cents, tip_percentage)
    except MoneyError as e:
        raise SplitLogicError(str(e)) from e
    if tip < 0:
        raise SplitLogicError("tip must not be negative")

    return PaymentSummary(
        subtotal_cents=share_cents,
        tip_cents=tip,
        total_cents=share_cents + tip,
        tip_percentage=tip_percentage,
    )
