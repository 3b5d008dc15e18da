"""
Repository Module

Abstract persistence interface consumed by the ledger poster and reference
generator, with an in-memory implementation (testing) and a SQLite
implementation (persistence). All monetary values are stored as Decimal
strings and all dates as ISO strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import date, datetime, timezone
from contextlib import contextmanager
from pathlib import Path
import copy
import json
import re
import sqlite3
import threading

from .errors import ReferenceCollisionError, StorageUnavailableError


def period_key(entry_date: date) -> str:
    """Closed periods are tracked per calendar month, 'YYYY-MM'"""
    return entry_date.strftime("%Y-%m")


def _reference_pattern(prefix: str):
    return re.compile(r"^" + re.escape(prefix) + r"\d{4}$")


class LedgerRepository(ABC):
    """
    Abstract interface for the persistence service behind the engine.

    Every check-then-write sequence must run inside transaction(): it is the
    compare-and-commit boundary that makes a posting indivisible relative to
    any other concurrent posting.
    """

    @abstractmethod
    @contextmanager
    def transaction(self):
        """Context manager for an atomic unit of work"""
        pass

    # Accounts

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_account_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_account(self, account: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def list_accounts(self) -> List[Dict[str, Any]]:
        pass

    # Periods

    @abstractmethod
    def is_period_closed(self, entry_date: date) -> bool:
        pass

    @abstractmethod
    def close_period(self, year_month: str, closed_by: Optional[str] = None) -> None:
        pass

    # Journal

    @abstractmethod
    def insert_journal_entry(self, header: Dict[str, Any], lines: List[Dict[str, Any]]) -> str:
        """Insert header and lines as one unit, returning the entry id"""
        pass

    @abstractmethod
    def find_journal_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """Header fields plus a 'lines' list, or None"""
        pass

    @abstractmethod
    def mark_journal_entry_reversed(self, entry_id: str, reversal_entry_id: str) -> None:
        pass

    @abstractmethod
    def posted_lines_for_account(self, account_id: str) -> List[Dict[str, Any]]:
        pass

    # References

    @abstractmethod
    def highest_reference_for_prefix(self, prefix: str) -> Optional[str]:
        """Highest sequential reference '<prefix>NNNN', or None"""
        pass

    @abstractmethod
    def reserve_reference(self, reference: str) -> None:
        """Record a reference; raises ReferenceCollisionError if it exists"""
        pass

    # Backdate approvals and audit events (JSON documents)

    @abstractmethod
    def save_backdate_approval(self, approval: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def load_backdate_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def append_audit_event(self, event: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def load_audit_events(self) -> List[Dict[str, Any]]:
        """All audit events in insertion order"""
        pass

    def close(self) -> None:
        """Close repository connection (default no-op)"""
        pass


class InMemoryRepository(LedgerRepository):
    """In-memory repository for testing; transactions roll back to a snapshot"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        self._data: Dict[str, Any] = {
            "accounts": {},
            "closed_periods": {},
            "journal_entries": {},
            "references": set(),
            "backdate_approvals": {},
            "audit_events": [],
        }

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._data) if outermost else None
            self._depth += 1
            try:
                yield self
            except Exception:
                if outermost:
                    self._data = snapshot
                raise
            finally:
                self._depth -= 1

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            account = self._data["accounts"].get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for account in self._data["accounts"].values():
                if account.get("code") == code:
                    return copy.deepcopy(account)
            return None

    def save_account(self, account: Dict[str, Any]) -> None:
        with self._lock:
            self._data["accounts"][account["id"]] = copy.deepcopy(account)

    def list_accounts(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._data["accounts"].values()]

    def is_period_closed(self, entry_date: date) -> bool:
        with self._lock:
            return period_key(entry_date) in self._data["closed_periods"]

    def close_period(self, year_month: str, closed_by: Optional[str] = None) -> None:
        with self._lock:
            self._data["closed_periods"][year_month] = {
                "month": year_month,
                "closed_by": closed_by,
                "closed_at": datetime.now(timezone.utc).isoformat(),
            }

    def insert_journal_entry(self, header: Dict[str, Any], lines: List[Dict[str, Any]]) -> str:
        with self.transaction():
            entries = self._data["journal_entries"]
            if header["id"] in entries:
                raise ValueError(f"Journal entry {header['id']} already exists")
            record = copy.deepcopy(header)
            record["lines"] = copy.deepcopy(lines)
            entries[header["id"]] = record
            return header["id"]

    def find_journal_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data["journal_entries"].get(entry_id)
            return copy.deepcopy(record) if record else None

    def mark_journal_entry_reversed(self, entry_id: str, reversal_entry_id: str) -> None:
        with self._lock:
            record = self._data["journal_entries"][entry_id]
            record["state"] = "reversed"
            record["reversed_by"] = reversal_entry_id

    def posted_lines_for_account(self, account_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            result = []
            for record in self._data["journal_entries"].values():
                for line in record["lines"]:
                    if line["account_id"] == account_id:
                        result.append(dict(line, journal_entry_id=record["id"]))
            return result

    def highest_reference_for_prefix(self, prefix: str) -> Optional[str]:
        pattern = _reference_pattern(prefix)
        with self._lock:
            matches = [ref for ref in self._data["references"] if pattern.match(ref)]
            return max(matches) if matches else None

    def reserve_reference(self, reference: str) -> None:
        with self._lock:
            if reference in self._data["references"]:
                raise ReferenceCollisionError(reference)
            self._data["references"].add(reference)

    def save_backdate_approval(self, approval: Dict[str, Any]) -> None:
        with self._lock:
            self._data["backdate_approvals"][approval["id"]] = json.loads(json.dumps(approval, default=str))

    def load_backdate_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            approval = self._data["backdate_approvals"].get(approval_id)
            return copy.deepcopy(approval) if approval else None

    def append_audit_event(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._data["audit_events"].append(json.loads(json.dumps(event, default=str)))

    def load_audit_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._data["audit_events"])


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    code TEXT UNIQUE,
    name TEXT NOT NULL,
    account_type TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS closed_periods (
    month TEXT PRIMARY KEY,
    closed_by TEXT,
    closed_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS journal_entries (
    id TEXT PRIMARY KEY,
    reference_type TEXT NOT NULL,
    reference_id TEXT,
    description TEXT NOT NULL,
    entry_date TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    state TEXT NOT NULL,
    reverses TEXT,
    reversed_by TEXT,
    approved_by TEXT,
    approver_role TEXT
);
CREATE TABLE IF NOT EXISTS journal_lines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    journal_entry_id TEXT NOT NULL REFERENCES journal_entries(id),
    line_no INTEGER NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    debit TEXT NOT NULL,
    credit TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_journal_lines_entry ON journal_lines(journal_entry_id);
CREATE INDEX IF NOT EXISTS idx_journal_lines_account ON journal_lines(account_id);
CREATE TABLE IF NOT EXISTS loan_references (
    reference TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS backdate_approvals (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    data TEXT NOT NULL
);
"""

_ENTRY_COLUMNS = (
    "id", "reference_type", "reference_id", "description", "entry_date", "created_by",
    "created_at", "state", "reverses", "reversed_by", "approved_by", "approver_role"
)


class SQLiteRepository(LedgerRepository):
    """SQLite repository; transaction() holds a BEGIN IMMEDIATE write lock"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        try:
            # Autocommit mode; write transactions are opened explicitly
            self._connection = sqlite3.connect(
                self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open database {self.db_path}: {e}")
        self._connection.row_factory = sqlite3.Row

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.executescript(SCHEMA)

    def _execute(self, sql: str, params: tuple = ()):
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            raise StorageUnavailableError(f"Database operation failed: {e}")

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except Exception:
                self._depth -= 1
                if outermost:
                    self._connection.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._execute("COMMIT")

    def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return self._account_from_row(row) if row else None

    def get_account_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute("SELECT * FROM accounts WHERE code = ?", (code,)).fetchone()
            return self._account_from_row(row) if row else None

    def save_account(self, account: Dict[str, Any]) -> None:
        with self._lock:
            self._execute(
                """
                INSERT INTO accounts (id, code, name, account_type, is_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    code = excluded.code, name = excluded.name,
                    account_type = excluded.account_type, is_active = excluded.is_active
                """,
                (account["id"], account.get("code"), account["name"],
                 account["account_type"], 1 if account.get("is_active", True) else 0)
            )

    def list_accounts(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._execute("SELECT * FROM accounts ORDER BY code").fetchall()
            return [self._account_from_row(row) for row in rows]

    def is_period_closed(self, entry_date: date) -> bool:
        with self._lock:
            row = self._execute(
                "SELECT 1 FROM closed_periods WHERE month = ? LIMIT 1", (period_key(entry_date),)
            ).fetchone()
            return row is not None

    def close_period(self, year_month: str, closed_by: Optional[str] = None) -> None:
        with self._lock:
            self._execute(
                "INSERT OR IGNORE INTO closed_periods (month, closed_by, closed_at) VALUES (?, ?, ?)",
                (year_month, closed_by, datetime.now(timezone.utc).isoformat())
            )

    def insert_journal_entry(self, header: Dict[str, Any], lines: List[Dict[str, Any]]) -> str:
        with self.transaction():
            self._execute(
                f"INSERT INTO journal_entries ({', '.join(_ENTRY_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _ENTRY_COLUMNS)})",
                tuple(header.get(column) for column in _ENTRY_COLUMNS)
            )
            for line_no, line in enumerate(lines, start=1):
                self._execute(
                    "INSERT INTO journal_lines (journal_entry_id, line_no, account_id, debit, credit) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (header["id"], line_no, line["account_id"], line["debit"], line["credit"])
                )
            return header["id"]

    def find_journal_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute("SELECT * FROM journal_entries WHERE id = ?", (entry_id,)).fetchone()
            if not row:
                return None
            record = {column: row[column] for column in _ENTRY_COLUMNS}
            lines = self._execute(
                "SELECT account_id, debit, credit FROM journal_lines "
                "WHERE journal_entry_id = ? ORDER BY line_no",
                (entry_id,)
            ).fetchall()
            record["lines"] = [dict(line) for line in lines]
            return record

    def mark_journal_entry_reversed(self, entry_id: str, reversal_entry_id: str) -> None:
        with self._lock:
            self._execute(
                "UPDATE journal_entries SET state = 'reversed', reversed_by = ? WHERE id = ?",
                (reversal_entry_id, entry_id)
            )

    def posted_lines_for_account(self, account_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._execute(
                "SELECT journal_entry_id, account_id, debit, credit FROM journal_lines "
                "WHERE account_id = ? ORDER BY id",
                (account_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def highest_reference_for_prefix(self, prefix: str) -> Optional[str]:
        with self._lock:
            row = self._execute(
                "SELECT reference FROM loan_references WHERE reference GLOB ? "
                "ORDER BY reference DESC LIMIT 1",
                (prefix + "[0-9][0-9][0-9][0-9]",)
            ).fetchone()
            return row["reference"] if row else None

    def reserve_reference(self, reference: str) -> None:
        with self._lock:
            try:
                self._connection.execute(
                    "INSERT INTO loan_references (reference, created_at) VALUES (?, ?)",
                    (reference, datetime.now(timezone.utc).isoformat())
                )
            except sqlite3.IntegrityError:
                raise ReferenceCollisionError(reference)
            except sqlite3.OperationalError as e:
                raise StorageUnavailableError(f"Database operation failed: {e}")

    def save_backdate_approval(self, approval: Dict[str, Any]) -> None:
        with self._lock:
            self._execute(
                "INSERT OR REPLACE INTO backdate_approvals (id, data) VALUES (?, ?)",
                (approval["id"], json.dumps(approval, default=str))
            )

    def load_backdate_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute(
                "SELECT data FROM backdate_approvals WHERE id = ?", (approval_id,)
            ).fetchone()
            return json.loads(row["data"]) if row else None

    def append_audit_event(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._execute(
                "INSERT INTO audit_events (id, data) VALUES (?, ?)",
                (event["id"], json.dumps(event, default=str))
            )

    def load_audit_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._execute("SELECT data FROM audit_events ORDER BY seq").fetchall()
            return [json.loads(row["data"]) for row in rows]

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    @staticmethod
    def _account_from_row(row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "code": row["code"],
            "name": row["name"],
            "account_type": row["account_type"],
            "is_active": bool(row["is_active"]),
        }
