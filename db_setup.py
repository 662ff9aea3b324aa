import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import structlog

from db_models import ContactRecord
from errors import StoreUnavailableError

logger = structlog.get_logger()

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        deletedAt DATETIME,
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    );
    CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email);
    CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber);
    CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId);
'''

_COLUMNS = "id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt, deletedAt"


def init_db(db_path: str):
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(sep=" ")


class ContactStore(ABC):
    """Record store capability consumed by the reconciliation engine.

    Every lookup ignores soft-deleted rows.
    """

    @abstractmethod
    def find_by_email(self, email: str) -> List[ContactRecord]:
        ...

    @abstractmethod
    def find_by_phone(self, phone: str) -> List[ContactRecord]:
        ...

    @abstractmethod
    def find_by_id(self, contact_id: int) -> Optional[ContactRecord]:
        ...

    @abstractmethod
    def find_cluster(self, primary_id: int) -> List[ContactRecord]:
        """Primary plus its direct secondaries, primary first then by age."""
        ...

    @abstractmethod
    def save(self, record: ContactRecord) -> ContactRecord:
        """Insert when `record.id` is None, update otherwise."""
        ...


class SQLiteContactRepository(ContactStore):
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _select(self, where: str, params) -> List[ContactRecord]:
        cursor = self.conn.execute(
            f"SELECT {_COLUMNS} FROM Contact WHERE deletedAt IS NULL AND {where}",
            params,
        )
        return [ContactRecord(**dict(row)) for row in cursor.fetchall()]

    def find_by_email(self, email: str) -> List[ContactRecord]:
        return self._select("email = ? ORDER BY createdAt ASC, id ASC", (email,))

    def find_by_phone(self, phone: str) -> List[ContactRecord]:
        return self._select("phoneNumber = ? ORDER BY createdAt ASC, id ASC", (phone,))

    def find_by_id(self, contact_id: int) -> Optional[ContactRecord]:
        rows = self._select("id = ?", (contact_id,))
        return rows[0] if rows else None

    def find_cluster(self, primary_id: int) -> List[ContactRecord]:
        return self._select(
            """(id = ? OR linkedId = ?)
            ORDER BY CASE linkPrecedence WHEN 'primary' THEN 0 ELSE 1 END,
                     createdAt ASC, id ASC""",
            (primary_id, primary_id),
        )

    def save(self, record: ContactRecord) -> ContactRecord:
        now = _utcnow()
        if record.id is None:
            created_at = record.createdAt or now
            cursor = self.conn.execute(
                """
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt, deletedAt)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.phoneNumber,
                    record.email,
                    record.linkedId,
                    record.linkPrecedence.value,
                    _to_db(created_at),
                    _to_db(now),
                    _to_db(record.deletedAt),
                ),
            )
            return record.model_copy(update={"id": cursor.lastrowid, "createdAt": created_at, "updatedAt": now})

        self.conn.execute(
            """
            UPDATE Contact
            SET phoneNumber = ?, email = ?, linkedId = ?, linkPrecedence = ?, updatedAt = ?, deletedAt = ?
            WHERE id = ?
            """,
            (
                record.phoneNumber,
                record.email,
                record.linkedId,
                record.linkPrecedence.value,
                _to_db(now),
                _to_db(record.deletedAt),
                record.id,
            ),
        )
        return record.model_copy(update={"updatedAt": now})


class SQLiteContactStore:
    """Opens one connection per transaction against a sqlite database file."""

    def __init__(self, db_path: str, busy_timeout: float = 5.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def init_schema(self):
        try:
            init_db(self.db_path)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError("Could not initialise contact store", context={"error": str(exc)}) from exc

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[SQLiteContactRepository]:
        """Yield a repository inside one write transaction.

        BEGIN IMMEDIATE takes the write lock before the first read, so two
        reconciliations touching the same records cannot interleave.
        Commits on success, rolls back on any error.
        """
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError("Could not open contact store", context={"error": str(exc)}) from exc

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield SQLiteContactRepository(conn)
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self._rollback(conn)
            raise StoreUnavailableError("Contact store transaction failed", context={"error": str(exc)}) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _rollback(self, conn: sqlite3.Connection):
        if conn.in_transaction:
            conn.execute("ROLLBACK")
            logger.debug("Rolled back contact store transaction", db_path=self.db_path)
