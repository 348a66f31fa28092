# inventory.py
# Cabinet records and the inventory store: an AES-GCM encrypted SQLite file per device.

import abc
import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidTag

from applog import logger
from vault import CRYPTO_LOCK, aes_decrypt, aes_encrypt, atomic_write_bytes


# -------------------------
# Records
# -------------------------
def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def _parse_dt(v: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(v) if v else None


def _parse_date(v: Optional[str]) -> Optional[date]:
    return date.fromisoformat(v[:10]) if v else None


def _json_list(v: Optional[str]) -> Tuple[str, ...]:
    try:
        return tuple(str(x) for x in json.loads(v or "[]"))
    except (TypeError, ValueError):
        return ()


@dataclass(frozen=True)
class MedicineRecord:
    id: str
    name: str
    drug_id: str = ""
    category: Optional[str] = None
    expiry_date: Optional[date] = None
    tablet_count: int = 0
    added_at: datetime = field(default_factory=_now)
    updated_at: Optional[datetime] = None
    expiry_alert_shown: bool = False
    doses_per_day: int = 1
    schedule_times: Tuple[str, ...] = ()
    food_warnings: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.tablet_count < 0:
            raise ValueError(f"tablet_count must be >= 0, got {self.tablet_count}")
        # accept lists from callers but keep the record hashable
        object.__setattr__(self, "schedule_times", tuple(self.schedule_times))
        object.__setattr__(self, "food_warnings", tuple(self.food_warnings))

    @classmethod
    def from_row(cls, row) -> "MedicineRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            drug_id=row["drug_id"] or "",
            category=row["category"],
            expiry_date=_parse_date(row["expiry_date"]),
            tablet_count=max(0, int(row["tablet_count"] or 0)),
            added_at=_parse_dt(row["added_at"]) or _now(),
            updated_at=_parse_dt(row["updated_at"]),
            expiry_alert_shown=bool(row["expiry_alert_shown"]),
            doses_per_day=int(row["doses_per_day"] or 1),
            schedule_times=_json_list(row["schedule_times"]),
            food_warnings=_json_list(row["food_warnings"]),
        )

    def __str__(self):
        return f"{self.name} (count={self.tablet_count}, expiry={self.expiry_date})"


@dataclass(frozen=True)
class DoseLogEntry:
    id: str
    medicine_id: str
    taken_at: datetime
    medicine_name: str = ""
    scheduled_time: Optional[str] = None
    quantity_taken: int = 1

    @property
    def log_date(self) -> date:
        return self.taken_at.date()

    @classmethod
    def from_row(cls, row) -> "DoseLogEntry":
        return cls(
            id=row["id"],
            medicine_id=row["medicine_id"],
            medicine_name=row["medicine_name"] or "",
            taken_at=_parse_dt(row["taken_at"]),
            scheduled_time=row["scheduled_time"],
            quantity_taken=int(row["quantity_taken"] or 1),
        )


# -------------------------
# Errors
# -------------------------
class StoreError(Exception):
    """An inventory operation did not complete; nothing was changed."""


class TransientStoreError(StoreError):
    pass


class StoreAuthError(StoreError):
    pass


class MedicineNotFoundError(StoreError):
    pass


class OutOfStockError(StoreError):
    pass


# -------------------------
# Store contracts
# -------------------------
class InventoryStore(abc.ABC):
    @abc.abstractmethod
    def fetch_medicines(self, user_id: str) -> List[MedicineRecord]:
        ...

    @abc.abstractmethod
    def fetch_today_dose_logs(self, user_id: str, today: Optional[date] = None) -> List[DoseLogEntry]:
        ...

    @abc.abstractmethod
    def record_dose(self, user_id: str, medicine_id: str, quantity: int,
                    scheduled_time: Optional[str] = None,
                    taken_at: Optional[datetime] = None) -> int:
        ...

    @abc.abstractmethod
    def restock(self, user_id: str, medicine_id: str, new_expiry: date, add_quantity: int) -> int:
        ...

    @abc.abstractmethod
    def remove_medicine(self, user_id: str, medicine_id: str):
        ...


class AlertStore(abc.ABC):
    @abc.abstractmethod
    def mark_alert_shown(self, user_id: str, medicine_id: str):
        ...


# -------------------------
# Encrypted SQLite store
# -------------------------
_SCHEMA = (
    """
    CREATE TABLE medicines (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        drug_id TEXT,
        name TEXT NOT NULL,
        category TEXT,
        expiry_date TEXT,           -- YYYY-MM-DD
        tablet_count INTEGER NOT NULL DEFAULT 0,
        added_at TEXT NOT NULL,
        updated_at TEXT,
        expiry_alert_shown INTEGER NOT NULL DEFAULT 0,
        doses_per_day INTEGER NOT NULL DEFAULT 1,
        schedule_times TEXT,        -- JSON list of "HH:MM"
        food_warnings TEXT          -- JSON list
    )
    """,
    """
    CREATE TABLE dose_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        medicine_id TEXT NOT NULL,
        medicine_name TEXT,
        taken_at TEXT NOT NULL,     -- ISO timestamp, local time
        scheduled_time TEXT,
        quantity_taken INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX idx_medicines_user ON medicines(user_id, added_at)",
    "CREATE INDEX idx_dose_logs_user ON dose_logs(user_id, taken_at)",
)


class EncryptedInventoryStore(InventoryStore, AlertStore):
    """Cabinet data for every local user, kept in one encrypted SQLite file.

    Each call decrypts the database into a private temp file, runs its
    statements in a single transaction and, for writes, re-encrypts the result
    over the original atomically. If anything fails the temp copy is dropped,
    so the encrypted file is never left half-updated.
    """

    def __init__(self, key: bytes, db_path: Path, tmp_dir: Path):
        self.key = key
        self.db_path = Path(db_path)
        self.tmp_dir = Path(tmp_dir)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        with self._guard("open store"):
            self._ensure_db()

    def _tmp_path(self, prefix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}.db"

    def _ensure_db(self):
        with CRYPTO_LOCK:
            if self.db_path.exists():
                return
            tmp = self._tmp_path("init")
            try:
                conn = sqlite3.connect(str(tmp))
                try:
                    for stmt in _SCHEMA:
                        conn.execute(stmt)
                    conn.commit()
                finally:
                    conn.close()
                atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
                logger.info(f"cabinet db created at {self.db_path}")
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except StoreError:
            raise
        except InvalidTag as e:
            raise StoreAuthError(f"{action}: vault key rejected") from e
        except (sqlite3.Error, OSError) as e:
            raise TransientStoreError(f"{action}: {e}") from e

    @contextmanager
    def _get_conn(self, action: str, write: bool = False):
        tmp = self._tmp_path("work")
        conn = None
        try:
            with self._guard(action), CRYPTO_LOCK:
                self._ensure_db()
                atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))
                conn = sqlite3.connect(str(tmp))
                conn.row_factory = sqlite3.Row
                yield conn
                if write:
                    conn.commit()
                conn.close()
                conn = None
                if write:
                    atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
        finally:
            if conn is not None:
                conn.close()
            tmp.unlink(missing_ok=True)

    @staticmethod
    def _require_user(user_id: str):
        if not user_id:
            raise StoreAuthError("no signed-in user")

    @staticmethod
    def _medicine_row(conn, user_id: str, medicine_id: str):
        row = conn.execute(
            "SELECT * FROM medicines WHERE id=? AND user_id=?", (medicine_id, user_id)
        ).fetchone()
        if row is None:
            raise MedicineNotFoundError(f"medicine {medicine_id} not in cabinet")
        return row

    # -------------------------
    # Reads
    # -------------------------
    def fetch_medicines(self, user_id: str) -> List[MedicineRecord]:
        self._require_user(user_id)
        with self._get_conn("fetch medicines") as conn:
            rows = conn.execute(
                "SELECT * FROM medicines WHERE user_id=? ORDER BY added_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
            return [MedicineRecord.from_row(r) for r in rows]

    def fetch_medicine(self, user_id: str, medicine_id: str) -> MedicineRecord:
        self._require_user(user_id)
        with self._get_conn("fetch medicine") as conn:
            return MedicineRecord.from_row(self._medicine_row(conn, user_id, medicine_id))

    def fetch_today_dose_logs(self, user_id: str, today: Optional[date] = None) -> List[DoseLogEntry]:
        self._require_user(user_id)
        day = (today or date.today()).isoformat()
        with self._get_conn("fetch today's dose logs") as conn:
            rows = conn.execute(
                """
                SELECT * FROM dose_logs
                WHERE user_id=? AND substr(taken_at, 1, 10)=?
                ORDER BY taken_at DESC
                """,
                (user_id, day),
            ).fetchall()
            return [DoseLogEntry.from_row(r) for r in rows]

    # -------------------------
    # Writes
    # -------------------------
    def add_medicine(self, user_id: str, record: MedicineRecord) -> str:
        self._require_user(user_id)
        med_id = record.id or uuid.uuid4().hex
        with self._get_conn("add medicine", write=True) as conn:
            conn.execute(
                """
                INSERT INTO medicines (id, user_id, drug_id, name, category, expiry_date,
                    tablet_count, added_at, updated_at, expiry_alert_shown, doses_per_day,
                    schedule_times, food_warnings)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    med_id, user_id, record.drug_id, record.name, record.category,
                    record.expiry_date.isoformat() if record.expiry_date else None,
                    record.tablet_count, record.added_at.isoformat(),
                    record.updated_at.isoformat() if record.updated_at else None,
                    int(record.expiry_alert_shown), record.doses_per_day,
                    json.dumps(list(record.schedule_times)), json.dumps(list(record.food_warnings)),
                ),
            )
        logger.info(f"added medicine id={med_id} {record.name} count={record.tablet_count}")
        return med_id

    def record_dose(self, user_id: str, medicine_id: str, quantity: int,
                    scheduled_time: Optional[str] = None,
                    taken_at: Optional[datetime] = None) -> int:
        self._require_user(user_id)
        taken_at = taken_at or _now()
        with self._get_conn("log dose", write=True) as conn:
            row = self._medicine_row(conn, user_id, medicine_id)
            current = int(row["tablet_count"] or 0)
            if current <= 0:
                raise OutOfStockError(f"{row['name']}: stock is empty")
            new_count = max(0, current - int(quantity))
            conn.execute(
                """
                INSERT INTO dose_logs (id, user_id, medicine_id, medicine_name, taken_at,
                    scheduled_time, quantity_taken)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, user_id, medicine_id, row["name"], taken_at.isoformat(),
                 scheduled_time, int(quantity)),
            )
            conn.execute(
                "UPDATE medicines SET tablet_count=?, updated_at=? WHERE id=? AND user_id=?",
                (new_count, _now().isoformat(), medicine_id, user_id),
            )
        logger.info(f"dose logged: med_id={medicine_id} qty={quantity} slot={scheduled_time} left={new_count}")
        return new_count

    def restock(self, user_id: str, medicine_id: str, new_expiry: date, add_quantity: int) -> int:
        self._require_user(user_id)
        with self._get_conn("update strip", write=True) as conn:
            row = self._medicine_row(conn, user_id, medicine_id)
            new_count = int(row["tablet_count"] or 0) + int(add_quantity)
            # a new strip re-arms the expiry prompt
            conn.execute(
                """
                UPDATE medicines SET expiry_date=?, tablet_count=?, expiry_alert_shown=0, updated_at=?
                WHERE id=? AND user_id=?
                """,
                (new_expiry.isoformat(), new_count, _now().isoformat(), medicine_id, user_id),
            )
        logger.info(f"restocked med_id={medicine_id} +{add_quantity} expiry={new_expiry} count={new_count}")
        return new_count

    def remove_medicine(self, user_id: str, medicine_id: str):
        self._require_user(user_id)
        with self._get_conn("remove medicine", write=True) as conn:
            self._medicine_row(conn, user_id, medicine_id)
            conn.execute("DELETE FROM medicines WHERE id=? AND user_id=?", (medicine_id, user_id))
        logger.info(f"removed medicine id={medicine_id}")

    def mark_alert_shown(self, user_id: str, medicine_id: str):
        self._require_user(user_id)
        with self._get_conn("mark alert shown", write=True) as conn:
            row = self._medicine_row(conn, user_id, medicine_id)
            if row["expiry_alert_shown"]:
                return
            conn.execute(
                "UPDATE medicines SET expiry_alert_shown=1, updated_at=? WHERE id=? AND user_id=?",
                (_now().isoformat(), medicine_id, user_id),
            )
        logger.info(f"expiry alert acknowledged med_id={medicine_id}")


def seed(store: EncryptedInventoryStore, user_id: str, records: Iterable[MedicineRecord]) -> List[str]:
    return [store.add_medicine(user_id, r) for r in records]
