"""Relational store for the escrow core.

SQLite-backed users, invoices, disputes, votes and processed payment
events. Every status change is a compare-and-swap UPDATE; uniqueness
rules (one vote per user per dispute, one open dispute per invoice,
one payment intent per invoice) are enforced by the schema.
"""

import sqlite3
import threading
import time
import uuid

from protocol import (
    ChainRecord, DisputeOutcome, InvoiceStatus, INVOICE_TRANSITIONS, VoteChoice,
)


class MarketStore:
    """SQLite-backed store with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA foreign_keys=ON")
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                wallet_address TEXT,
                sbt_token_id INTEGER,
                sbt_tx_hash TEXT,
                sbt_stub INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                amount TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'DRAFT',
                client_id TEXT,
                freelancer_id TEXT,
                payment_intent_id TEXT UNIQUE,
                token_id INTEGER,
                onchain_tx_hash TEXT,
                mint_stub INTEGER NOT NULL DEFAULT 0,
                released_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_invoice_status ON invoices(status);

            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                invoice_id TEXT NOT NULL REFERENCES invoices(id),
                opener_id TEXT NOT NULL REFERENCES users(id),
                reason TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                outcome TEXT,
                created_at REAL NOT NULL,
                resolved_at REAL
            );
            -- at most one unresolved dispute per invoice
            CREATE UNIQUE INDEX IF NOT EXISTS idx_one_open_dispute
                ON disputes(invoice_id) WHERE resolved = 0;

            CREATE TABLE IF NOT EXISTS dispute_votes (
                dispute_id TEXT NOT NULL REFERENCES disputes(id),
                user_id TEXT NOT NULL REFERENCES users(id),
                vote TEXT NOT NULL,
                created_at REAL NOT NULL,
                PRIMARY KEY (dispute_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS payment_events (
                event_id TEXT PRIMARY KEY,
                intent_id TEXT,
                event_type TEXT NOT NULL,
                received_at REAL NOT NULL
            );
        """)
        self.db.commit()

    # --- Users ---

    def create_user(self, name: str = "", wallet_address: str = "", user_id: str | None = None) -> str:
        """Seed a user (registration itself lives outside the escrow core)."""
        user_id = user_id or uuid.uuid4().hex
        with self._lock:
            self.db.execute(
                "INSERT INTO users (id, name, wallet_address, created_at) VALUES (?, ?, ?, ?)",
                (user_id, name, wallet_address or None, time.time()),
            )
            self.db.commit()
        return user_id

    def get_user(self, user_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            return None
        return self._user_to_dict(row)

    def set_user_chain_record(self, user_id: str, record: ChainRecord) -> bool:
        """Attach the latest reputation SBT to a user."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE users SET sbt_token_id = ?, sbt_tx_hash = ?, sbt_stub = ? WHERE id = ?",
                (record.token_id, record.tx_hash, int(record.stub), user_id),
            )
            self.db.commit()
            return cursor.rowcount > 0

    # --- Invoices ---

    def create_invoice(
        self,
        amount: str,
        title: str = "",
        status: str = InvoiceStatus.DRAFT.value,
        client_id: str | None = None,
        freelancer_id: str | None = None,
        invoice_id: str | None = None,
    ) -> str:
        """Seed an invoice. Returns invoice ID."""
        InvoiceStatus(status)
        invoice_id = invoice_id or uuid.uuid4().hex
        now = time.time()
        with self._lock:
            self.db.execute(
                "INSERT INTO invoices (id, title, amount, status, client_id, freelancer_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (invoice_id, title, str(amount), status, client_id, freelancer_id, now, now),
            )
            self.db.commit()
        return invoice_id

    def get_invoice(self, invoice_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        if not row:
            return None
        return self._invoice_to_dict(row)

    def get_invoice_by_intent(self, intent_id: str) -> dict | None:
        """Look up an invoice by the processor's payment intent id."""
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM invoices WHERE payment_intent_id = ?", (intent_id,)
            ).fetchone()
        if not row:
            return None
        return self._invoice_to_dict(row)

    def set_payment_intent(self, invoice_id: str, intent_id: str, payable: set[str]) -> bool:
        """Record the intent id once, only while the invoice is payable."""
        placeholders = ",".join("?" for _ in payable)
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE invoices SET payment_intent_id = ?, updated_at = ? "
                f"WHERE id = ? AND payment_intent_id IS NULL AND status IN ({placeholders})",
                (intent_id, time.time(), invoice_id, *sorted(payable)),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def transition_invoice(
        self,
        invoice_id: str,
        expected: str,
        new_status: str,
        released_at: float | None = None,
    ) -> bool:
        """Move an invoice from *expected* to *new_status* (compare-and-swap).

        Raises ValueError for a transition the state machine never allows.
        Returns False if the invoice was not in *expected* at write time.
        """
        try:
            current_state = InvoiceStatus(expected)
            new_state = InvoiceStatus(new_status)
        except ValueError:
            raise ValueError(f"Invalid state: {expected} -> {new_status}")
        if new_state not in INVOICE_TRANSITIONS.get(current_state, set()):
            raise ValueError(f"Invalid state transition: {expected} -> {new_status}")

        with self._lock:
            cursor = self.db.execute(
                "UPDATE invoices SET status = ?, released_at = COALESCE(?, released_at), updated_at = ? "
                "WHERE id = ? AND status = ?",
                (new_status, released_at, time.time(), invoice_id, expected),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def set_invoice_chain_record(self, invoice_id: str, record: ChainRecord) -> bool:
        """Attach a mint result once. Returns False if one is already set."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE invoices SET token_id = ?, onchain_tx_hash = ?, mint_stub = ?, updated_at = ? "
                "WHERE id = ? AND token_id IS NULL",
                (record.token_id, record.tx_hash, int(record.stub), time.time(), invoice_id),
            )
            self.db.commit()
            return cursor.rowcount > 0

    # --- Disputes ---

    def create_dispute(self, invoice_id: str, opener_id: str, reason: str, dispute_id: str | None = None) -> str:
        """Insert an open dispute.

        Raises sqlite3.IntegrityError if the invoice already has an open one.
        """
        dispute_id = dispute_id or str(uuid.uuid4())
        with self._lock:
            try:
                self.db.execute(
                    "INSERT INTO disputes (id, invoice_id, opener_id, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                    (dispute_id, invoice_id, opener_id, reason, time.time()),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                raise
        return dispute_id

    def get_open_dispute(self, invoice_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM disputes WHERE invoice_id = ? AND resolved = 0", (invoice_id,)
            ).fetchone()
            if not row:
                return None
            return self._dispute_to_dict(row, self._votes(row["id"]))

    def get_dispute(self, dispute_id: str) -> dict | None:
        with self._lock:
            row = self.db.execute("SELECT * FROM disputes WHERE id = ?", (dispute_id,)).fetchone()
            if not row:
                return None
            return self._dispute_to_dict(row, self._votes(dispute_id))

    def list_disputes(self, limit: int = 100) -> list[dict]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM disputes ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
            return [self._dispute_to_dict(r, self._votes(r["id"])) for r in rows]

    def add_vote(self, dispute_id: str, user_id: str, vote: VoteChoice) -> str:
        """Record a vote while the dispute is open.

        Returns "ok", "duplicate" (user already voted) or "closed"
        (dispute resolved or missing at write time).
        """
        with self._lock:
            try:
                cursor = self.db.execute(
                    "INSERT INTO dispute_votes (dispute_id, user_id, vote, created_at) "
                    "SELECT ?, ?, ?, ? WHERE EXISTS "
                    "(SELECT 1 FROM disputes WHERE id = ? AND resolved = 0)",
                    (dispute_id, user_id, vote.value, time.time(), dispute_id),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                return "duplicate"
            return "ok" if cursor.rowcount > 0 else "closed"

    def close_dispute(self, dispute_id: str, outcome: DisputeOutcome, vote_count: int) -> bool:
        """Resolve a dispute if it is still open and its tally is unchanged."""
        with self._lock:
            cursor = self.db.execute(
                "UPDATE disputes SET resolved = 1, outcome = ?, resolved_at = ? "
                "WHERE id = ? AND resolved = 0 "
                "AND (SELECT COUNT(*) FROM dispute_votes WHERE dispute_id = ?) = ?",
                (outcome.value, time.time(), dispute_id, dispute_id, vote_count),
            )
            self.db.commit()
            return cursor.rowcount > 0

    # --- Payment events ---

    def record_payment_event(self, event_id: str, intent_id: str | None, event_type: str) -> bool:
        """Remember a processor event id. Returns False if already seen."""
        with self._lock:
            try:
                self.db.execute(
                    "INSERT INTO payment_events (event_id, intent_id, event_type, received_at) VALUES (?, ?, ?, ?)",
                    (event_id, intent_id, event_type, time.time()),
                )
                self.db.commit()
            except sqlite3.IntegrityError:
                self.db.rollback()
                return False
            return True

    def has_payment_event(self, event_id: str) -> bool:
        with self._lock:
            row = self.db.execute(
                "SELECT 1 FROM payment_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row is not None

    # --- Row mapping ---

    def _votes(self, dispute_id: str) -> list[dict]:
        rows = self.db.execute(
            "SELECT * FROM dispute_votes WHERE dispute_id = ? ORDER BY created_at, user_id",
            (dispute_id,),
        ).fetchall()
        return [
            {"dispute_id": r["dispute_id"], "user_id": r["user_id"], "vote": r["vote"], "created_at": r["created_at"]}
            for r in rows
        ]

    def _user_to_dict(self, row) -> dict:
        chain = None
        if row["sbt_token_id"] is not None:
            chain = ChainRecord(row["sbt_token_id"], row["sbt_tx_hash"], bool(row["sbt_stub"]))
        return {
            "id": row["id"],
            "name": row["name"],
            "wallet_address": row["wallet_address"],
            "chain": chain,
            "created_at": row["created_at"],
        }

    def _invoice_to_dict(self, row) -> dict:
        chain = None
        if row["token_id"] is not None:
            chain = ChainRecord(row["token_id"], row["onchain_tx_hash"], bool(row["mint_stub"]))
        return {
            "id": row["id"],
            "title": row["title"],
            "amount": row["amount"],
            "status": row["status"],
            "client_id": row["client_id"],
            "freelancer_id": row["freelancer_id"],
            "payment_intent_id": row["payment_intent_id"],
            "chain": chain,
            "released_at": row["released_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _dispute_to_dict(self, row, votes: list[dict]) -> dict:
        return {
            "id": row["id"],
            "invoice_id": row["invoice_id"],
            "opener_id": row["opener_id"],
            "reason": row["reason"],
            "resolved": bool(row["resolved"]),
            "outcome": row["outcome"],
            "votes": votes,
            "created_at": row["created_at"],
            "resolved_at": row["resolved_at"],
        }

    def close(self):
        self.db.close()
