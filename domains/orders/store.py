import json
import logging
import os
import tempfile
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from domains.orders.model import DATE_RE, record_date, utc_now_iso
from domains.orders.report import compute_stats

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"

Record = Dict[str, Any]

# one lock per file path, shared by every store instance in the process
_file_locks: Dict[str, threading.RLock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _file_locks_guard:
        lock = _file_locks.get(key)
        if lock is None:
            lock = threading.RLock()
            _file_locks[key] = lock
        return lock


class CorruptBackupFile(Exception):
    pass


class OrderBackupStore:
    """
    File-backed mirror of orders, keyed by Stripe session id.

    Layout:
        <backup_dir>/orders.json                      master log (JSON array)
        <backup_dir>/daily/orders-YYYY-MM-DD.json     one array per order date

    Reads never raise: a missing or corrupt file reads as empty. Writes return
    False on failure; callers treat the backup as best-effort.
    """

    def __init__(self, backup_dir: Union[str, Path]) -> None:
        self.backup_dir = Path(backup_dir)
        self.orders_file = self.backup_dir / "orders.json"
        self.daily_dir = self.backup_dir / "daily"
        self.init()

    def init(self) -> bool:
        try:
            self.daily_dir.mkdir(parents=True, exist_ok=True)
            with _lock_for(self.orders_file):
                if not self.orders_file.exists():
                    self._write_json(self.orders_file, [])
            return True
        except OSError as e:
            logger.error(f" ❌ [Backup] Failed to initialize {self.backup_dir}: {e}")
            return False

    @property
    def ready(self) -> bool:
        return self.orders_file.exists() and os.access(self.backup_dir, os.W_OK)

    def daily_file(self, day: Union[str, date]) -> Path:
        key = day.isoformat() if isinstance(day, date) else day
        if not DATE_RE.match(key):
            raise ValueError(f"Invalid date: {key!r}")
        return self.daily_dir / f"orders-{key}.json"

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def append(self, record: Record) -> bool:
        """
        Add backup info, then write to the master log and the record's daily file.
        A session id already in the log is not added twice: the stored record
        only gains the fields it is missing (a confirmed order stays confirmed).
        """
        session_id = record.get("sessionId")
        try:
            stamped = {
                **record,
                "backupTimestamp": utc_now_iso(),
                "backupVersion": BACKUP_VERSION,
            }
            # must be JSON serializable, nothing else is checked
            json.dumps(stamped)

            with _lock_for(self.orders_file):
                orders = self._read_json(self.orders_file, strict=True)
                index = self._index_of(orders, session_id) if session_id else None
                if index is None:
                    orders.append(stamped)
                    self._write_json(self.orders_file, orders)
                    self._append_to_daily(stamped)
                    logger.info(f" 💾 [Backup] Order {session_id} backed up.")
                    return True

                filled = dict(orders[index])
                for key, value in stamped.items():
                    if filled.get(key) is None:
                        filled[key] = value
                orders[index] = filled
                self._write_json(self.orders_file, orders)
        except (OSError, TypeError, ValueError, CorruptBackupFile) as e:
            logger.error(f" ❌ [Backup] Failed to save order: {e}")
            return False

        self._update_daily(filled)
        logger.info(f" 🔁 [Backup] Order {session_id} already there, gaps filled.")
        return True

    def merge(self, session_id: str, partial: Record) -> bool:
        """
        Shallow-merge `partial` into the record with this session id.
        Unknown session id -> append `partial` as a new record.
        """
        try:
            with _lock_for(self.orders_file):
                orders = self._read_json(self.orders_file, strict=True)
                index = self._index_of(orders, session_id)
                if index is None:
                    # still under the master lock: concurrent merges append once
                    logger.info(f" ➕ [Backup] {session_id} not in backup yet.")
                    return self.append({**partial, "sessionId": session_id})
                merged = {**orders[index], **partial, "sessionId": session_id}
                orders[index] = merged
                self._write_json(self.orders_file, orders)
        except (OSError, TypeError, ValueError, CorruptBackupFile) as e:
            logger.error(f" ❌ [Backup] Failed to update order {session_id}: {e}")
            return False

        self._update_daily(merged)
        logger.info(f" 🔄 [Backup] Order {session_id} updated.")
        return True

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def list_all(self) -> List[Record]:
        with _lock_for(self.orders_file):
            return self._read_json(self.orders_file)

    def list_by_date(self, day: Union[str, date]) -> List[Record]:
        try:
            path = self.daily_file(day)
        except ValueError as e:
            logger.warning(f" ⚠️ [Backup] {e}")
            return []
        if not path.exists():
            return []
        with _lock_for(path):
            return self._read_json(path)

    def find_by_session_id(self, session_id: str) -> Optional[Record]:
        for order in self.list_all():
            if order.get("sessionId") == session_id:
                return order
        return None

    def search(self, term: str) -> List[Record]:
        needle = term.lower()

        def matches(order: Record) -> bool:
            fields = (
                order.get("customerEmail"),
                order.get("sessionId"),
                order.get("customerName"),
            )
            if any(isinstance(f, str) and needle in f.lower() for f in fields):
                return True
            return needle in json.dumps(order.get("items")).lower()

        return [order for order in self.list_all() if matches(order)]

    def stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        return compute_stats(self.list_all(), today=today)

    # ------------------------------------------------------------------
    # file helpers
    # ------------------------------------------------------------------

    def _append_to_daily(self, record: Record) -> None:
        path = self.daily_file(record_date(record))
        with _lock_for(path):
            orders = self._read_json(path, strict=True)
            orders.append(record)
            self._write_json(path, orders)

    def _update_daily(self, record: Record) -> None:
        try:
            path = self.daily_file(record_date(record))
            if not path.exists():
                return
            with _lock_for(path):
                orders = self._read_json(path, strict=True)
                index = self._index_of(orders, record["sessionId"])
                if index is None:
                    return
                orders[index] = record
                self._write_json(path, orders)
        except (OSError, TypeError, ValueError, CorruptBackupFile) as e:
            session_id = record.get("sessionId")
            logger.error(f" ❌ [Backup] Daily copy of {session_id} not updated: {e}")

    @staticmethod
    def _index_of(orders: List[Record], session_id: str) -> Optional[int]:
        for i, order in enumerate(orders):
            if order.get("sessionId") == session_id:
                return i
        return None

    @staticmethod
    def _read_json(path: Path, strict: bool = False) -> List[Record]:
        """
        strict=False: missing/corrupt -> []   (reads)
        strict=True:  missing -> [], corrupt -> CorruptBackupFile   (writes,
        so a damaged log is never overwritten with a fresh one)
        """
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            if strict:
                raise CorruptBackupFile(f"{path}: {e}") from e
            logger.error(f" ❌ [Backup] Failed to read {path}: {e}")
            return []

        if not isinstance(data, list):
            if strict:
                raise CorruptBackupFile(f"{path}: expected a JSON array")
            logger.error(f" ❌ [Backup] {path} does not hold a JSON array")
            return []
        return data

    @staticmethod
    def _write_json(path: Path, data: List[Record]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise


def parse_day(value: str) -> date:
    """Strict YYYY-MM-DD parsing for query parameters"""
    if not DATE_RE.match(value):
        raise ValueError(f"Invalid date: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").date()
