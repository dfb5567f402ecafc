from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import (
    LEAD_STAGE_ORDER,
    Contact,
    ConversationState,
    Fingerprint,
    LeadContext,
)


def _contact_key(name: str) -> str:
    return " ".join(str(name or "").split()).lower()


def contact_id_for(account_id: str, name: str) -> str:
    return f"{account_id}:{_contact_key(name)}"


def lead_stage_allows(current: Optional[str], new: str) -> bool:
    if new in {"LOST", "CONVERTED"}:
        return True
    order = LEAD_STAGE_ORDER
    current_idx = order.index(current) if current in order else 0
    new_idx = order.index(new) if new in order else -1
    return new_idx > current_idx


@contextmanager
def _connect(path: Path) -> Iterator[sqlite3.Connection]:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    try:
        with conn:
            yield conn
    finally:
        conn.close()


class ContactStore:
    """Durable per-contact conversation state.

    Every write is an upsert keyed by contact identity and commits before the
    method returns, so the loop can crash at any point without the stored state
    running ahead of the side effects it records.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.init_db()

    def init_db(self) -> None:
        with _connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS contacts (
                    contact_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    fp_digest TEXT,
                    fp_inbound INTEGER,
                    fp_outbound INTEGER,
                    lead_id TEXT,
                    lead_stage TEXT,
                    contact_info TEXT,
                    end_reason TEXT,
                    pending_digest TEXT,
                    pending_decision TEXT,
                    last_activity_ts REAL,
                    created_ts REAL NOT NULL,
                    updated_ts REAL NOT NULL,
                    archived_ts REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stage_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    contact_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    reason TEXT,
                    payload TEXT,
                    trigger_digest TEXT NOT NULL,
                    ts REAL NOT NULL,
                    UNIQUE (contact_id, stage, trigger_digest)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS leads (
                    lead_id TEXT PRIMARY KEY,
                    account_id TEXT,
                    author_name TEXT,
                    post_text TEXT NOT NULL,
                    matched_service TEXT,
                    group_name TEXT,
                    posted_at TEXT,
                    stage TEXT NOT NULL DEFAULT 'LEAD',
                    contact_info TEXT,
                    contact_id TEXT,
                    created_ts REAL NOT NULL,
                    stage_updated_ts REAL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    message TEXT NOT NULL,
                    ts REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_contacts_account ON contacts(account_id, state)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transitions_contact ON stage_transitions(contact_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_leads_author ON leads(author_name)")

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> Contact:
        fingerprint = None
        if row["fp_digest"] is not None:
            fingerprint = Fingerprint(
                digest=row["fp_digest"],
                inbound=int(row["fp_inbound"] or 0),
                outbound=int(row["fp_outbound"] or 0),
            )
        pending = None
        if row["pending_decision"]:
            try:
                pending = json.loads(row["pending_decision"])
            except ValueError:
                pending = None
        return Contact(
            contact_id=row["contact_id"],
            account_id=row["account_id"],
            name=row["name"],
            state=ConversationState(row["state"]),
            fingerprint=fingerprint,
            last_activity_ts=row["last_activity_ts"],
            lead_id=row["lead_id"],
            lead_stage=row["lead_stage"],
            contact_info=row["contact_info"],
            end_reason=row["end_reason"],
            pending_digest=row["pending_digest"],
            pending_decision=pending,
        )

    def get_contact(self, account_id: str, name: str) -> Optional[Contact]:
        with _connect(self.path) as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE contact_id = ?",
                (contact_id_for(account_id, name),),
            ).fetchone()
        return self._row_to_contact(row) if row else None

    def ensure_contact(self, account_id: str, name: str) -> Contact:
        """Return the stored contact, creating it (and linking a lead) on first observation."""
        existing = self.get_contact(account_id, name)
        if existing:
            return existing
        contact_id = contact_id_for(account_id, name)
        now = time.time()
        with _connect(self.path) as conn:
            lead = conn.execute(
                """
                SELECT lead_id, stage FROM leads
                WHERE lower(author_name) = ? AND contact_id IS NULL
                  AND (account_id IS NULL OR account_id = ?)
                ORDER BY created_ts DESC LIMIT 1
                """,
                (_contact_key(name), account_id),
            ).fetchone()
            lead_id = lead["lead_id"] if lead else None
            conn.execute(
                """
                INSERT OR IGNORE INTO contacts (
                    contact_id, account_id, name, state, lead_id, lead_stage,
                    last_activity_ts, created_ts, updated_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    contact_id,
                    account_id,
                    name.strip(),
                    ConversationState.NEW.value,
                    lead_id,
                    lead["stage"] if lead else None,
                    now,
                    now,
                    now,
                ),
            )
            if lead_id:
                conn.execute("UPDATE leads SET contact_id = ? WHERE lead_id = ?", (contact_id, lead_id))
        contact = self.get_contact(account_id, name)
        if contact is None:
            raise RuntimeError(f"Contact row missing after insert contact_id={contact_id}")
        return contact

    def persist_fingerprint(
        self,
        contact_id: str,
        fingerprint: Fingerprint,
        state: ConversationState,
        *,
        clear_pending: bool = False,
        end_reason: Optional[str] = None,
    ) -> None:
        """Store a read's fingerprint and state.

        Re-persisting an ARCHIVED contact keeps its archive time and activity
        timestamp; only new inbound reactivates it.
        """
        now = time.time()
        keep_archive = 1 if state == ConversationState.ARCHIVED else 0
        with _connect(self.path) as conn:
            conn.execute(
                """
                UPDATE contacts SET
                    fp_digest = ?, fp_inbound = ?, fp_outbound = ?, state = ?,
                    end_reason = CASE WHEN ? IN ('ENDED', 'ARCHIVED') THEN COALESCE(?, end_reason) ELSE NULL END,
                    pending_digest = CASE WHEN ? THEN NULL ELSE pending_digest END,
                    pending_decision = CASE WHEN ? THEN NULL ELSE pending_decision END,
                    archived_ts = CASE WHEN ? THEN archived_ts ELSE NULL END,
                    last_activity_ts = CASE WHEN ? THEN last_activity_ts ELSE ? END,
                    updated_ts = ?
                WHERE contact_id = ?
                """,
                (
                    fingerprint.digest,
                    fingerprint.inbound,
                    fingerprint.outbound,
                    state.value,
                    state.value,
                    end_reason,
                    1 if clear_pending else 0,
                    1 if clear_pending else 0,
                    keep_archive,
                    keep_archive,
                    now,
                    now,
                    contact_id,
                ),
            )

    def set_state(self, contact_id: str, state: ConversationState) -> None:
        now = time.time()
        with _connect(self.path) as conn:
            conn.execute(
                """
                UPDATE contacts SET state = ?, archived_ts = NULL, last_activity_ts = ?, updated_ts = ?
                WHERE contact_id = ?
                """,
                (state.value, now, now, contact_id),
            )

    def save_pending(self, contact_id: str, digest: str, decision: Dict[str, Any]) -> None:
        with _connect(self.path) as conn:
            conn.execute(
                "UPDATE contacts SET pending_digest = ?, pending_decision = ?, updated_ts = ? WHERE contact_id = ?",
                (digest, json.dumps(decision, ensure_ascii=False), time.time(), contact_id),
            )

    def clear_pending(self, contact_id: str) -> None:
        with _connect(self.path) as conn:
            conn.execute(
                "UPDATE contacts SET pending_digest = NULL, pending_decision = NULL, updated_ts = ? WHERE contact_id = ?",
                (time.time(), contact_id),
            )

    def persist_stage_transition(
        self,
        contact_id: str,
        stage: str,
        payload: Optional[str] = None,
        *,
        reason: str = "",
        trigger_digest: str = "",
    ) -> bool:
        """Record a stage transition once per (contact, stage, trigger).

        Returns False when the same transition was already recorded for this
        trigger. The linked lead only moves forward.
        """
        now = time.time()
        with _connect(self.path) as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO stage_transitions (contact_id, stage, reason, payload, trigger_digest, ts)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (contact_id, stage, reason, payload, trigger_digest, now),
            )
            if cur.rowcount == 0:
                return False
            row = conn.execute(
                "SELECT lead_id, lead_stage FROM contacts WHERE contact_id = ?", (contact_id,)
            ).fetchone()
            lead_id = row["lead_id"] if row else None
            if row and lead_stage_allows(row["lead_stage"], stage):
                conn.execute(
                    "UPDATE contacts SET lead_stage = ?, updated_ts = ? WHERE contact_id = ?",
                    (stage, now, contact_id),
                )
            conn.execute(
                "UPDATE contacts SET contact_info = COALESCE(?, contact_info) WHERE contact_id = ?",
                (payload, contact_id),
            )
            if lead_id:
                lead = conn.execute("SELECT stage FROM leads WHERE lead_id = ?", (lead_id,)).fetchone()
                if lead and lead_stage_allows(lead["stage"], stage):
                    conn.execute(
                        """
                        UPDATE leads SET stage = ?, contact_info = COALESCE(?, contact_info), stage_updated_ts = ?
                        WHERE lead_id = ?
                        """,
                        (stage, payload, now, lead_id),
                    )
        return True

    def stage_transitions(self, contact_id: str) -> List[Dict[str, Any]]:
        with _connect(self.path) as conn:
            rows = conn.execute(
                "SELECT stage, reason, payload, trigger_digest, ts FROM stage_transitions WHERE contact_id = ? ORDER BY id",
                (contact_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def add_lead(
        self,
        *,
        post_text: str,
        author_name: Optional[str] = None,
        matched_service: Optional[str] = None,
        group_name: str = "",
        posted_at: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> str:
        lead_id = uuid.uuid4().hex
        with _connect(self.path) as conn:
            conn.execute(
                """
                INSERT INTO leads (
                    lead_id, account_id, author_name, post_text, matched_service, group_name, posted_at, created_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    lead_id,
                    account_id,
                    author_name.strip() if author_name else None,
                    post_text,
                    matched_service,
                    group_name,
                    posted_at,
                    time.time(),
                ),
            )
        return lead_id

    def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        with _connect(self.path) as conn:
            row = conn.execute("SELECT * FROM leads WHERE lead_id = ?", (lead_id,)).fetchone()
        return dict(row) if row else None

    def lead_context(self, contact: Contact) -> Optional[LeadContext]:
        if not contact.lead_id:
            return None
        lead = self.get_lead(contact.lead_id)
        if not lead:
            return None
        return LeadContext(
            post_text=lead["post_text"],
            author_name=lead["author_name"] or contact.name,
            matched_service=lead["matched_service"],
            group_name=lead["group_name"] or "",
            posted_at=lead["posted_at"],
        )

    def list_contacts(self, account_id: str, state: Optional[ConversationState] = None) -> List[Contact]:
        query = "SELECT * FROM contacts WHERE account_id = ?"
        params: List[Any] = [account_id]
        if state is not None:
            query += " AND state = ?"
            params.append(state.value)
        query += " ORDER BY last_activity_ts DESC"
        with _connect(self.path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_contact(row) for row in rows]

    def archive_inactive(self, account_id: str, inactive_days: int, now: Optional[float] = None) -> int:
        """Archive idle contacts; contacts that still need a reply are never archived."""
        current = now if now is not None else time.time()
        cutoff = current - max(0, inactive_days) * 86400
        with _connect(self.path) as conn:
            cur = conn.execute(
                """
                UPDATE contacts SET state = ?, archived_ts = ?, updated_ts = ?
                WHERE account_id = ? AND state NOT IN (?, ?)
                  AND COALESCE(last_activity_ts, created_ts) < ?
                """,
                (
                    ConversationState.ARCHIVED.value,
                    current,
                    current,
                    account_id,
                    ConversationState.NEEDS_REPLY.value,
                    ConversationState.ARCHIVED.value,
                    cutoff,
                ),
            )
            return cur.rowcount

    def reset_contact(self, account_id: str, name: str) -> bool:
        contact_id = contact_id_for(account_id, name)
        with _connect(self.path) as conn:
            conn.execute("UPDATE leads SET contact_id = NULL WHERE contact_id = ?", (contact_id,))
            conn.execute("DELETE FROM stage_transitions WHERE contact_id = ?", (contact_id,))
            cur = conn.execute("DELETE FROM contacts WHERE contact_id = ?", (contact_id,))
            return cur.rowcount > 0

    def record_notification(self, account_id: str, kind: str, message: str) -> None:
        with _connect(self.path) as conn:
            conn.execute(
                "INSERT INTO notifications (account_id, kind, message, ts) VALUES (?, ?, ?, ?)",
                (account_id, kind, message[:2000], time.time()),
            )

    def list_notifications(self, account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with _connect(self.path) as conn:
            rows = conn.execute(
                "SELECT kind, message, ts FROM notifications WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]
