# backend/tablesplit/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class ModelValidationError(ValueError):
    """Raised when domain models fail basic validation."""


class SplitMethod(str, Enum):
    BY_ITEMS = "BY_ITEMS"
    BY_AMOUNT = "BY_AMOUNT"
    EQUAL = "EQUAL"
    DYNAMIC_EQUAL = "DYNAMIC_EQUAL"


class SessionStatus(str, Enum):
    ACTIVE = "active"  # open, diners can join and pick a split
    LOCKED = "locked"  # everyone ready, waiting for payment
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


def _non_negative_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass(frozen=True)
class BillItem:
    """
    An order line item. unit_price_cents is integer minor units.
    """
    id: str
    name: str
    unit_price_cents: int
    quantity: int = 1

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ModelValidationError("BillItem.id must be a non-empty string")
        if not isinstance(self.name, str):
            raise ModelValidationError("BillItem.name must be a string")
        if not _non_negative_int(self.unit_price_cents):
            raise ModelValidationError("BillItem.unit_price_cents must be an int >= 0")
        if not _non_negative_int(self.quantity) or self.quantity == 0:
            raise ModelValidationError("BillItem.quantity must be an int >= 1")


@dataclass(frozen=True)
class Bill:
    """
    Authoritative bill for a table. total_cents is owned by the order
    system; the split code only reads it.
    """
    total_cents: int
    items: Tuple[BillItem, ...] = ()
    currency: str = "EUR"

    def __post_init__(self) -> None:
        if not _non_negative_int(self.total_cents):
            raise ModelValidationError("Bill.total_cents must be an int >= 0")
        if not isinstance(self.items, tuple):
            raise ModelValidationError("Bill.items must be a tuple")
        iids = [i.id for i in self.items]
        if len(set(iids)) != len(iids):
            raise ModelValidationError("item ids must be unique")


@dataclass(frozen=True)
class Participant:
    """
    One diner's membership in a session.

    Records are never deleted; a diner who leaves or stops sending
    heartbeats keeps the row with is_active=False.
    """
    id: str
    session_id: str
    joined_at: datetime
    is_active: bool = True
    is_host: bool = False
    name: str = ""
    last_seen_at: Optional[datetime] = None
    split_method: SplitMethod = SplitMethod.BY_ITEMS
    fixed_amount_cents: int = 0
    selected_item_ids: Tuple[str, ...] = ()
    claimed_quantities: Dict[str, int] = field(default_factory=dict)
    tip_percentage: int = 0
    payment_status: PaymentStatus = PaymentStatus.PENDING

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ModelValidationError("Participant.id must be a non-empty string")
        if not isinstance(self.session_id, str) or not self.session_id.strip():
            raise ModelValidationError("Participant.session_id must be a non-empty string")
        if not isinstance(self.joined_at, datetime):
            raise ModelValidationError("Participant.joined_at must be a datetime")
        if not isinstance(self.is_active, bool) or not isinstance(self.is_host, bool):
            raise ModelValidationError("Participant.is_active/is_host must be bools")
        if not isinstance(self.split_method, SplitMethod):
            raise ModelValidationError("Participant.split_method must be a SplitMethod")
        if not _non_negative_int(self.fixed_amount_cents):
            raise ModelValidationError("Participant.fixed_amount_cents must be an int >= 0")
        if not isinstance(self.selected_item_ids, tuple):
            raise ModelValidationError("Participant.selected_item_ids must be a tuple")
        for item_id, qty in self.claimed_quantities.items():
            if not _non_negative_int(qty):
                raise ModelValidationError(f"claimed quantity for item {item_id} must be an int >= 0")
