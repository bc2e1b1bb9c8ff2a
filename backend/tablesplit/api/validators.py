from __future__ import annotations

from typing import Any, Mapping, Optional
from uuid import UUID

from tablesplit.domain.models import SplitMethod
from tablesplit.domain.reconciliation import PaymentSnapshot


class ApiValidationError(ValueError):
    """Raised when request payload validation fails."""


def is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_uuid_field(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not is_uuid(value):
        raise ApiValidationError(f"'{name}' must be a valid UUID string.")
    return value


def _parse_optional_int(data: Mapping[str, Any], name: str, *, minimum: int) -> Optional[int]:
    value = data.get(name)
    if value is None:
        return None
    if not _is_int(value) or value < minimum:
        raise ApiValidationError(f"'{name}' must be an int >= {minimum}.")
    return value


def parse_payment_request(data: object) -> PaymentSnapshot:
    """
    Shape-check a payment initiation body and turn it into a snapshot.
    Nothing here looks at session state.
    """
    if not isinstance(data, dict):
        raise ApiValidationError("Request body must be a JSON object.")

    session_id = parse_uuid_field(data, "sessionId")
    participant_id = parse_uuid_field(data, "participantId")

    amount_cents = data.get("amountCents")
    if not _is_int(amount_cents) or amount_cents < 0:
        raise ApiValidationError("'amountCents' must be an int >= 0.")

    raw_method = data.get("splitMethod")
    try:
        split_method = SplitMethod(raw_method)
    except ValueError:
        allowed = ", ".join(m.value for m in SplitMethod)
        raise ApiValidationError(f"'splitMethod' must be one of: {allowed}.") from None

    expected_count = _parse_optional_int(data, "expectedParticipantCount", minimum=1)
    bill_total = _parse_optional_int(data, "billTotalCents", minimum=0)

    if split_method is SplitMethod.DYNAMIC_EQUAL:
        if expected_count is None or bill_total is None:
            raise ApiValidationError(
                "'expectedParticipantCount' and 'billTotalCents' are required for DYNAMIC_EQUAL."
            )
    else:
        expected_count = bill_total = None

    return PaymentSnapshot(
        session_id=session_id,
        participant_id=participant_id,
        amount_cents=amount_cents,
        split_method=split_method,
        expected_participant_count=expected_count,
        bill_total_cents=bill_total,
    )


def parse_tip_percentage(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return 0
    try:
        value = int(raw)
    except ValueError:
        raise ApiValidationError("'tipPercentage' must be an integer.") from None
    if value < 0 or value > 100:
        raise ApiValidationError("'tipPercentage' must be between 0 and 100.")
    return value
