from __future__ import annotations

from typing import Any, Optional

import psycopg

from tablesplit.domain.models import (
    Bill,
    BillItem,
    Participant,
    PaymentStatus,
    SessionStatus,
    SplitMethod,
)
from tablesplit.domain.reconciliation import SessionState

_PARTICIPANT_COLUMNS = """
    id::text, session_id::text, name, joined_at, last_seen_at, is_active, is_host,
    split_method, fixed_amount_cents, selected_item_ids, claimed_quantities,
    tip_percentage, payment_status
"""


def _participant_from_row(row) -> Participant:
    return Participant(
        id=row[0],
        session_id=row[1],
        name=row[2] or "",
        joined_at=row[3],
        last_seen_at=row[4],
        is_active=bool(row[5]),
        is_host=bool(row[6]),
        split_method=SplitMethod(row[7]),
        fixed_amount_cents=int(row[8] or 0),
        selected_item_ids=tuple(row[9] or ()),
        claimed_quantities={k: int(v) for k, v in (row[10] or {}).items()},
        tip_percentage=int(row[11] or 0),
        payment_status=PaymentStatus(row[12]),
    )


class SessionRepository:
    """
    Read/write access to table sessions, bill items and participants.

    Participant rows are only ever flagged inactive, never deleted.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url.strip()

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)

    def _connect(self):
        if not self.enabled:
            raise RuntimeError("DATABASE_URL not configured")
        return psycopg.connect(self.database_url)

    def load_session_state(self, *, session_id: str) -> Optional[SessionState]:
        """
        Read bill and participants in one REPEATABLE READ transaction so
        both come from the same moment. Returns None for unknown sessions.
        """
        with self._connect() as conn:
            conn.isolation_level = psycopg.IsolationLevel.REPEATABLE_READ
            with conn.transaction(), conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT bill_total_cents, currency, updated_at
                    FROM sessions
                    WHERE id = %s
                    """,
                    (session_id,),
                )
                session_row = cur.fetchone()
                if session_row is None:
                    return None

                cur.execute(
                    """
                    SELECT id::text, name, unit_price_cents, quantity
                    FROM bill_items
                    WHERE session_id = %s
                    ORDER BY position ASC, id ASC
                    """,
                    (session_id,),
                )
                items = tuple(
                    BillItem(id=row[0], name=row[1], unit_price_cents=int(row[2]), quantity=int(row[3]))
                    for row in cur.fetchall()
                )

                cur.execute(
                    f"""
                    SELECT {_PARTICIPANT_COLUMNS}, updated_at
                    FROM participants
                    WHERE session_id = %s
                    ORDER BY joined_at ASC, id ASC
                    """,
                    (session_id,),
                )
                rows = cur.fetchall()

        participants = tuple(_participant_from_row(row) for row in rows)
        latest_change = max((row[13] for row in rows), default=None)
        return SessionState(
            session_id=session_id,
            bill=Bill(total_cents=int(session_row[0]), items=items, currency=session_row[1]),
            participants=participants,
            revision=(session_row[2], len(rows), latest_change),
        )

    def session_revision(self, *, session_id: str) -> Any:
        """
        Same revision tuple load_session_state() reports, without the rows.
        """
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.updated_at, count(p.id), max(p.updated_at)
                FROM sessions s
                LEFT JOIN participants p ON p.session_id = s.id
                WHERE s.id = %s
                GROUP BY s.updated_at
                """,
                (session_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return (row[0], int(row[1]), row[2])

    def get_session_status(self, *, session_id: str) -> Optional[SessionStatus]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute("SELECT status FROM sessions WHERE id = %s", (session_id,))
            row = cur.fetchone()
            return SessionStatus(row[0]) if row else None

    def record_heartbeat(self, *, session_id: str, participant_id: str) -> bool:
        """
        Refresh last_seen_at and (re)activate. updated_at only moves when
        the participant was inactive, so routine pings keep the revision.
        """
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE participants
                SET last_seen_at = now(),
                    updated_at = CASE WHEN is_active THEN updated_at ELSE now() END,
                    is_active = TRUE
                WHERE id = %s AND session_id = %s
                """,
                (participant_id, session_id),
            )
            found = cur.rowcount > 0
            conn.commit()
            return found

    def mark_participant_left(self, *, session_id: str, participant_id: str) -> bool:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE participants
                SET is_active = FALSE, last_seen_at = now(), updated_at = now()
                WHERE id = %s AND session_id = %s
                """,
                (participant_id, session_id),
            )
            found = cur.rowcount > 0
            conn.commit()
            return found

    def set_split_method(self, *, participant_id: str, split_method: SplitMethod) -> None:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE participants
                SET split_method = %s, updated_at = now()
                WHERE id = %s
                """,
                (split_method.value, participant_id),
            )
            conn.commit()

    def get_recorded_active_count(self, *, session_id: str) -> Optional[int]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute("SELECT active_count FROM sessions WHERE id = %s", (session_id,))
            row = cur.fetchone()
            return int(row[0]) if row and row[0] is not None else None

    def record_active_count(self, *, session_id: str, active_count: int) -> None:
        """
        Remember the head count the split methods were last evaluated for.
        updated_at is left alone; the count is bookkeeping, not session state.
        """
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                "UPDATE sessions SET active_count = %s WHERE id = %s",
                (active_count, session_id),
            )
            conn.commit()
