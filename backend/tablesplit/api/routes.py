from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, jsonify, request

from tablesplit.api.validators import (
    ApiValidationError,
    is_uuid,
    parse_payment_request,
    parse_tip_percentage,
    parse_uuid_field,
)
from tablesplit.db.repository import SessionRepository
from tablesplit.domain.liveness import refresh_liveness, select_active
from tablesplit.domain.models import SplitMethod
from tablesplit.domain.money import format_minor_units
from tablesplit.domain.reconciliation import RejectionCode
from tablesplit.domain.split_logic import (
    SplitLogicError,
    calculate_dynamic_split,
    check_fixed_amount,
    claimed_by_others_cents,
    get_my_share,
    remainder_payer,
    summarize_payment,
)
from tablesplit.services import payment_gate, presence

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")

# Inactive callers are forbidden outright; every other rejection means the
# client's view of the table is out of date.
_REJECTION_STATUS = {
    RejectionCode.PARTICIPANT_INACTIVE: 403,
    RejectionCode.INVALID_PARTICIPANT_COUNT: 409,
    RejectionCode.PARTICIPANT_COUNT_MISMATCH: 409,
    RejectionCode.INVALID_AMOUNT: 409,
}


def _json_error(message: str, *, status: int = 400, code: str = "bad_request", **extra):
    return jsonify({"error": {"code": code, "message": message, **extra}}), status


def _repo() -> SessionRepository:
    return SessionRepository(current_app.config.get("DATABASE_URL", ""))


def _stale_after() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("PARTICIPANT_STALE_SECONDS", 30)))


def _validate_session_id(session_id: str):
    if not is_uuid(session_id):
        return _json_error("Session id must be a valid UUID.", status=400)
    return None


@api_bp.get("/health")
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.post("/payment/initiate")
def initiate_payment():
    """
    Validate a payment request against live session state.

    200 -> {"success": true, "validated": {...}}; the caller may now charge.
    403/409 -> {"error": {"code", "message", ...details}}; the caller must
    re-fetch the session and build a fresh request.
    """
    data = request.get_json(silent=True)
    if data is None:
        return _json_error("Request body must be JSON.", status=400)

    try:
        snapshot = parse_payment_request(data)
    except ApiValidationError as e:
        return _json_error(str(e), status=400, code="validation_error")

    repo = _repo()
    if not repo.enabled:
        return _json_error("Database is not configured.", status=503, code="db_unavailable")

    try:
        result = payment_gate.validate_payment(repo, snapshot, stale_after=_stale_after())
    except payment_gate.SessionNotFoundError:
        return _json_error("Session not found.", status=404, code="session_not_found")
    except payment_gate.InconsistentStateError:
        logger.warning("session %s kept changing during payment validation", snapshot.session_id)
        return _json_error("Session is changing, please retry.", status=503, code="session_busy")
    except Exception:
        logger.exception("payment validation failed for session %s", snapshot.session_id)
        return _json_error("Failed to validate payment.", status=500, code="db_error")

    if result.accepted:
        return jsonify(result.payload), 200
    return jsonify({"error": result.payload}), _REJECTION_STATUS[result.code]


def _presence_endpoint(session_id: str, action):
    invalid = _validate_session_id(session_id)
    if invalid:
        return invalid

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _json_error("Request body must be a JSON object.", status=400)
    try:
        participant_id = parse_uuid_field(data, "participantId")
    except ApiValidationError as e:
        return _json_error(str(e), status=400, code="validation_error")

    repo = _repo()
    if not repo.enabled:
        return _json_error("Database is not configured.", status=503, code="db_unavailable")

    try:
        found = action(repo, session_id, participant_id, stale_after=_stale_after())
    except Exception:
        logger.exception("presence update failed for session %s", session_id)
        return _json_error("Failed to update participant presence.", status=500, code="db_error")

    if not found:
        return _json_error("Participant not found in this session.", status=404, code="not_found")
    return jsonify({"success": True, "timestamp": datetime.now(timezone.utc).isoformat()}), 200


@api_bp.post("/sessions/<session_id>/heartbeat")
def heartbeat(session_id: str):
    return _presence_endpoint(session_id, presence.record_heartbeat)


@api_bp.post("/sessions/<session_id>/leave")
def leave(session_id: str):
    return _presence_endpoint(session_id, presence.leave_session)


@api_bp.get("/sessions/<session_id>/split")
def session_split(session_id: str):
    """
    Dynamic equal split of the session bill as seen by one participant.

    Query: participantId (uuid), tipPercentage (0-100, optional)

    fixedAmount is null unless the caller splits BY_AMOUNT; then it says
    whether their typed amount is more than the others left unclaimed.
    """
    invalid = _validate_session_id(session_id)
    if invalid:
        return invalid

    try:
        participant_id = parse_uuid_field(request.args, "participantId")
        tip_percentage = parse_tip_percentage(request.args.get("tipPercentage"))
    except ApiValidationError as e:
        return _json_error(str(e), status=400, code="validation_error")

    repo = _repo()
    if not repo.enabled:
        return _json_error("Database is not configured.", status=503, code="db_unavailable")

    try:
        state = repo.load_session_state(session_id=session_id)
    except Exception:
        logger.exception("failed to load session %s", session_id)
        return _json_error("Failed to load session.", status=500, code="db_error")
    if state is None:
        return _json_error("Session not found.", status=404, code="session_not_found")

    participants = refresh_liveness(state.participants, datetime.now(timezone.utc), _stale_after())
    active = select_active(participants)
    total = state.bill.total_cents
    currency = state.bill.currency or current_app.config.get("DEFAULT_CURRENCY", "EUR")

    try:
        split = calculate_dynamic_split(total, len(active))
        my_share = get_my_share(total, participants, participant_id)
        summary = summarize_payment(my_share, tip_percentage)
        me = next((p for p in participants if p.id == participant_id), None)
        fixed_amount = None
        if me is not None and me.split_method is SplitMethod.BY_AMOUNT:
            check = check_fixed_amount(
                me.fixed_amount_cents,
                total,
                claimed_by_others_cents(state.bill, participants, participant_id),
            )
            fixed_amount = {
                "amountCents": check.amount_cents,
                "remainingCents": check.remaining_cents,
                "exceedsRemaining": check.exceeds_remaining,
            }
    except SplitLogicError as e:
        return _json_error(str(e), status=422, code="split_failed")

    payer = remainder_payer(participants)
    return jsonify(
        {
            "sessionId": session_id,
            "currency": currency,
            "billTotalCents": total,
            "activeParticipantCount": split.participant_count,
            "baseAmountCents": split.base_amount_cents,
            "remainderCents": split.remainder_cents,
            "remainderPayerId": payer.id if payer else None,
            "myShareCents": summary.subtotal_cents,
            "tipCents": summary.tip_cents,
            "totalCents": summary.total_cents,
            "formatted": {
                "myShare": format_minor_units(summary.subtotal_cents, currency),
                "tip": format_minor_units(summary.tip_cents, currency),
                "total": format_minor_units(summary.total_cents, currency),
            },
            "fixedAmount": fixed_amount,
        }
    ), 200
