from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from flask import Flask

from tablesplit.api.routes import api_bp
from tablesplit.domain.models import Bill, Participant, SessionStatus, SplitMethod
from tablesplit.domain.reconciliation import SessionState

SESSION = "11111111-1111-1111-1111-111111111111"
HOST = "22222222-2222-2222-2222-222222222222"
BOB = "33333333-3333-3333-3333-333333333333"
CAROL = "44444444-4444-4444-4444-444444444444"
STRANGER = "55555555-5555-5555-5555-555555555555"


@pytest.fixture()
def app():
    app = Flask(__name__)
    app.register_blueprint(api_bp)
    app.config["TESTING"] = True
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _participant(pid, minutes, *, host=False, active=True, method=SplitMethod.DYNAMIC_EQUAL):
    now = datetime.now(timezone.utc)
    return Participant(
        id=pid,
        session_id=SESSION,
        joined_at=now - timedelta(minutes=60 - minutes),
        last_seen_at=now,
        is_host=host,
        is_active=active,
        split_method=method,
    )


class FakeRepo:
    enabled = True

    def __init__(self, participants, total=1000, status=SessionStatus.ACTIVE):
        self.participants = list(participants)
        self.total = total
        self.status = status
        self.revision = 1
        self.method_updates = []
        self.recorded_active_count = sum(1 for p in self.participants if p.is_active)

    def load_session_state(self, *, session_id):
        if session_id != SESSION:
            return None
        return SessionState(
            session_id=session_id,
            bill=Bill(total_cents=self.total),
            participants=tuple(self.participants),
            revision=self.revision,
        )

    def session_revision(self, *, session_id):
        return self.revision

    def get_session_status(self, *, session_id):
        return self.status

    def _update(self, participant_id, **changes):
        for idx, p in enumerate(self.participants):
            if p.id == participant_id:
                self.participants[idx] = replace(p, **changes)
                self.revision += 1
                return True
        return False

    def record_heartbeat(self, *, session_id, participant_id):
        return self._update(participant_id, is_active=True, last_seen_at=datetime.now(timezone.utc))

    def mark_participant_left(self, *, session_id, participant_id):
        return self._update(participant_id, is_active=False)

    def set_split_method(self, *, participant_id, split_method):
        self.method_updates.append((participant_id, split_method))
        self._update(participant_id, split_method=split_method)

    def get_recorded_active_count(self, *, session_id):
        return self.recorded_active_count

    def record_active_count(self, *, session_id, active_count):
        self.recorded_active_count = active_count


def _table():
    return [_participant(HOST, 0, host=True), _participant(BOB, 1), _participant(CAROL, 2)]


def _use(monkeypatch, repo):
    monkeypatch.setattr("tablesplit.api.routes._repo", lambda: repo)
    return repo


def _payment(participant_id, amount, *, count=3, total=1000, method="DYNAMIC_EQUAL"):
    body = {
        "sessionId": SESSION,
        "participantId": participant_id,
        "amountCents": amount,
        "splitMethod": method,
    }
    if method == "DYNAMIC_EQUAL":
        body["expectedParticipantCount"] = count
        body["billTotalCents"] = total
    return body


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok"}


def test_initiate_payment_requires_db(client):
    r = client.post("/api/payment/initiate", json=_payment(HOST, 334))
    assert r.status_code == 503
    assert r.get_json()["error"]["code"] == "db_unavailable"


def test_initiate_payment_accepts_correct_share(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))

    r = client.post("/api/payment/initiate", json=_payment(HOST, 334))
    assert r.status_code == 200
    body = r.get_json()
    assert body["success"] is True
    validated = body["validated"]
    assert validated["sessionId"] == SESSION
    assert validated["participantId"] == HOST
    assert validated["amountCents"] == 334
    assert validated["splitMethod"] == "DYNAMIC_EQUAL"
    assert validated["timestamp"]


def test_initiate_payment_is_safe_to_retry(client, monkeypatch):
    repo = _use(monkeypatch, FakeRepo(_table()))
    before = list(repo.participants)

    first = client.post("/api/payment/initiate", json=_payment(BOB, 333))
    second = client.post("/api/payment/initiate", json=_payment(BOB, 333))

    assert first.status_code == second.status_code == 200
    assert repo.participants == before
    assert repo.method_updates == []


def test_initiate_payment_count_mismatch_after_leave(client, monkeypatch):
    repo = _use(monkeypatch, FakeRepo(_table()))
    repo.participants[2] = replace(repo.participants[2], is_active=False)

    r = client.post("/api/payment/initiate", json=_payment(HOST, 334))
    assert r.status_code == 409
    err = r.get_json()["error"]
    assert err["code"] == "PARTICIPANT_COUNT_MISMATCH"
    assert err["expectedCount"] == 3
    assert err["actualCount"] == 2


def test_initiate_payment_lapsed_heartbeat_counts_as_left(client, monkeypatch):
    repo = _use(monkeypatch, FakeRepo(_table()))
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=5)
    repo.participants[1] = replace(repo.participants[1], last_seen_at=long_ago)

    r = client.post("/api/payment/initiate", json=_payment(BOB, 333))
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "PARTICIPANT_INACTIVE"


def test_initiate_payment_invalid_amount(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))

    r = client.post("/api/payment/initiate", json=_payment(BOB, 340))
    assert r.status_code == 409
    err = r.get_json()["error"]
    assert err["code"] == "INVALID_AMOUNT"
    assert err["providedAmount"] == 340
    assert err["expectedBaseAmount"] == 333
    assert err["expectedWithRemainder"] == 334


def test_initiate_payment_unknown_participant_is_inactive(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))
    r = client.post("/api/payment/initiate", json=_payment(STRANGER, 333))
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "PARTICIPANT_INACTIVE"


def test_initiate_payment_unknown_session(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))
    body = _payment(HOST, 334)
    body["sessionId"] = STRANGER
    r = client.post("/api/payment/initiate", json=body)
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "session_not_found"


def test_initiate_payment_rereads_when_state_moves(client, monkeypatch):
    class MovingRepo(FakeRepo):
        def __init__(self, *a, **kw):
            super().__init__(*a, **kw)
            self.loads = 0

        def load_session_state(self, *, session_id):
            self.loads += 1
            return super().load_session_state(session_id=session_id)

        def session_revision(self, *, session_id):
            # Carol leaves right after the first read.
            if self.loads == 1 and self.participants[2].is_active:
                self.mark_participant_left(session_id=session_id, participant_id=CAROL)
            return self.revision

    repo = _use(monkeypatch, MovingRepo(_table()))
    r = client.post("/api/payment/initiate", json=_payment(HOST, 334))

    assert repo.loads == 2
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "PARTICIPANT_COUNT_MISMATCH"


def test_initiate_payment_gives_up_when_state_never_settles(client, monkeypatch):
    class ChurningRepo(FakeRepo):
        def session_revision(self, *, session_id):
            self.revision += 1
            return self.revision

    _use(monkeypatch, ChurningRepo(_table()))
    r = client.post("/api/payment/initiate", json=_payment(HOST, 334))
    assert r.status_code == 503
    assert r.get_json()["error"]["code"] == "session_busy"


@pytest.mark.parametrize(
    "patch,fragment",
    [
        ({"amountCents": -1}, "amountcents"),
        ({"amountCents": 3.5}, "amountcents"),
        ({"amountCents": True}, "amountcents"),
        ({"splitMethod": "HALF"}, "splitmethod"),
        ({"sessionId": "not-a-uuid"}, "sessionid"),
        ({"participantId": None}, "participantid"),
        ({"expectedParticipantCount": 0}, "expectedparticipantcount"),
        ({"expectedParticipantCount": None}, "required"),
        ({"billTotalCents": None}, "required"),
    ],
)
def test_initiate_payment_rejects_malformed_requests(client, monkeypatch, patch, fragment):
    repo = _use(monkeypatch, FakeRepo(_table()))
    repo.load_session_state = None  # must not be reached

    body = {**_payment(HOST, 334), **patch}
    r = client.post("/api/payment/initiate", json=body)
    assert r.status_code == 400
    err = r.get_json()["error"]
    assert err["code"] == "validation_error"
    assert fragment in err["message"].lower()


def test_initiate_payment_rejects_non_json(client):
    r = client.post("/api/payment/initiate", data="nope", content_type="text/plain")
    assert r.status_code == 400


def test_initiate_payment_equal_method_needs_no_count(client, monkeypatch):
    _use(monkeypatch, FakeRepo([_participant(HOST, 0, host=True, method=SplitMethod.EQUAL)], total=2599))
    r = client.post("/api/payment/initiate", json=_payment(HOST, 2599, method="EQUAL"))
    assert r.status_code == 200
    assert r.get_json()["validated"]["splitMethod"] == "EQUAL"


def test_heartbeat_revives_and_switches_equal_to_dynamic(client, monkeypatch):
    repo = _use(
        monkeypatch,
        FakeRepo(
            [
                _participant(HOST, 0, host=True, method=SplitMethod.EQUAL),
                _participant(BOB, 1, active=False, method=SplitMethod.BY_ITEMS),
            ]
        ),
    )

    r = client.post(f"/api/sessions/{SESSION}/heartbeat", json={"participantId": BOB})
    assert r.status_code == 200
    assert r.get_json()["success"] is True
    assert repo.participants[1].is_active is True
    # host flips to dynamic split, Bob keeps his manual choice
    assert repo.method_updates == [(HOST, SplitMethod.DYNAMIC_EQUAL)]


def test_leave_marks_inactive_and_switches_to_equal(client, monkeypatch):
    repo = _use(
        monkeypatch,
        FakeRepo([_participant(HOST, 0, host=True), _participant(BOB, 1)]),
    )

    r = client.post(f"/api/sessions/{SESSION}/leave", json={"participantId": BOB})
    assert r.status_code == 200
    assert repo.participants[1].is_active is False
    assert len(repo.participants) == 2
    assert repo.method_updates == [(HOST, SplitMethod.EQUAL)]


def test_heartbeat_notices_silent_drop_out_and_switches_survivor_to_equal(client, monkeypatch):
    lapsed = datetime.now(timezone.utc) - timedelta(seconds=120)
    repo = _use(
        monkeypatch,
        FakeRepo([_participant(HOST, 0, host=True), replace(_participant(BOB, 1), last_seen_at=lapsed)]),
    )
    assert repo.recorded_active_count == 2

    # Bob never calls leave; the host's next ping is the first to notice Bob is gone.
    r = client.post(f"/api/sessions/{SESSION}/heartbeat", json={"participantId": HOST})
    assert r.status_code == 200
    assert repo.method_updates == [(HOST, SplitMethod.EQUAL)]
    assert repo.recorded_active_count == 1

    # Another ping at the same head count changes nothing.
    client.post(f"/api/sessions/{SESSION}/heartbeat", json={"participantId": HOST})
    assert repo.method_updates == [(HOST, SplitMethod.EQUAL)]


def test_first_heartbeat_only_records_head_count(client, monkeypatch):
    repo = _use(monkeypatch, FakeRepo([_participant(HOST, 0, host=True, method=SplitMethod.EQUAL)]))
    repo.recorded_active_count = None

    r = client.post(f"/api/sessions/{SESSION}/heartbeat", json={"participantId": HOST})
    assert r.status_code == 200
    assert repo.recorded_active_count == 1
    assert repo.method_updates == []


def test_leave_does_not_switch_after_table_locked(client, monkeypatch):
    repo = _use(
        monkeypatch,
        FakeRepo([_participant(HOST, 0, host=True), _participant(BOB, 1)], status=SessionStatus.LOCKED),
    )
    r = client.post(f"/api/sessions/{SESSION}/leave", json={"participantId": BOB})
    assert r.status_code == 200
    assert repo.method_updates == []


def test_leave_unknown_participant_is_404(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))
    r = client.post(f"/api/sessions/{SESSION}/leave", json={"participantId": STRANGER})
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "not_found"


def test_heartbeat_validates_payload(client):
    r = client.post(f"/api/sessions/{SESSION}/heartbeat", json={"participantId": "x"})
    assert r.status_code == 400
    r = client.post("/api/sessions/not-a-uuid/heartbeat", json={"participantId": HOST})
    assert r.status_code == 400


def test_split_view_for_host_and_guest(client, monkeypatch):
    repo = _use(monkeypatch, FakeRepo(_table()))
    repo.participants.append(_participant(STRANGER, 3, active=False))

    r = client.get(f"/api/sessions/{SESSION}/split?participantId={HOST}&tipPercentage=10")
    assert r.status_code == 200
    body = r.get_json()
    assert body["activeParticipantCount"] == 3
    assert body["baseAmountCents"] == 333
    assert body["remainderCents"] == 1
    assert body["remainderPayerId"] == HOST
    assert body["myShareCents"] == 334
    assert body["tipCents"] == 33
    assert body["totalCents"] == 367
    assert body["formatted"] == {"myShare": "€3.34", "tip": "€0.33", "total": "€3.67"}
    assert body["fixedAmount"] is None

    r = client.get(f"/api/sessions/{SESSION}/split?participantId={STRANGER}")
    assert r.get_json()["myShareCents"] == 0


def test_split_view_flags_fixed_amount_over_what_is_left(client, monkeypatch):
    repo = _use(
        monkeypatch,
        FakeRepo(
            [
                replace(_participant(HOST, 0, host=True, method=SplitMethod.BY_AMOUNT), fixed_amount_cents=600),
                replace(_participant(BOB, 1, method=SplitMethod.BY_AMOUNT), fixed_amount_cents=500),
                replace(_participant(CAROL, 2, active=False, method=SplitMethod.BY_AMOUNT), fixed_amount_cents=900),
            ]
        ),
    )

    body = client.get(f"/api/sessions/{SESSION}/split?participantId={BOB}").get_json()
    assert body["fixedAmount"] == {"amountCents": 500, "remainingCents": 400, "exceedsRemaining": True}

    repo.participants[1] = replace(repo.participants[1], fixed_amount_cents=400)
    body = client.get(f"/api/sessions/{SESSION}/split?participantId={BOB}").get_json()
    assert body["fixedAmount"]["exceedsRemaining"] is False


def test_split_view_rejects_bad_tip(client, monkeypatch):
    _use(monkeypatch, FakeRepo(_table()))
    r = client.get(f"/api/sessions/{SESSION}/split?participantId={HOST}&tipPercentage=abc")
    assert r.status_code == 400


def test_create_app_wires_blueprint_and_config():
    from tablesplit import create_app

    class TestConfig:
        DATABASE_URL = ""
        PARTICIPANT_STALE_SECONDS = 45
        LOG_LEVEL = "WARNING"

    app = create_app(TestConfig)
    assert app.config["PARTICIPANT_STALE_SECONDS"] == 45
    r = app.test_client().get("/api/health")
    assert r.status_code == 200
