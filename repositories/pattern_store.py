"""Pattern store abstraction and its reference implementations.

The engine never keeps mutable pattern state across calls.  Everything it
reads comes from a :class:`PatternStore` snapshot and every statistics
change goes through :meth:`PatternStore.update_stats`, which must be
atomic per pattern id so concurrent feedback never loses an update.

Two stores ship with the engine:

``InMemoryPatternStore``
    Process-local dictionary guarded by per-pattern locks.  Used by tests
    and by embedded callers that persist patterns elsewhere.
``SqlPatternStore``
    DB-API store (SQLite or PostgreSQL through ``psycopg2``).  Statistics
    are incremented in a single ``UPDATE`` statement; transient lock or
    serialisation failures are retried a bounded number of times before
    :class:`~engines.errors.ConcurrentUpdateConflict` is raised.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from engines.errors import (
    ConcurrentUpdateConflict,
    ExtractionEngineError,
    PatternNotFoundError,
    StoreUnavailableError,
)
from models.extraction import Pattern, ValueType

logger = logging.getLogger(__name__)

SupplierFilter = Optional[Union[str, Iterable[str]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _supplier_set(supplier: SupplierFilter) -> Optional[set]:
    if supplier is None:
        return None
    if isinstance(supplier, str):
        return {supplier}
    return {str(item) for item in supplier}


def _check_deltas(usage_delta: int, success_delta: int) -> None:
    if usage_delta < 0 or success_delta < 0:
        raise ValueError("statistics deltas must be non-negative")
    if success_delta > usage_delta:
        raise ValueError("success delta cannot exceed usage delta")


class PatternStore(ABC):
    """Read/write access to learned patterns."""

    @abstractmethod
    def list_patterns(
        self,
        supplier: SupplierFilter = None,
        field_name: Optional[str] = None,
        *,
        include_inactive: bool = True,
    ) -> List[Pattern]:
        """Return patterns filtered by supplier(s) and field."""

    def list_active_patterns(
        self, supplier: SupplierFilter = None, field_name: Optional[str] = None
    ) -> List[Pattern]:
        return self.list_patterns(supplier, field_name, include_inactive=False)

    @abstractmethod
    def get_pattern(self, pattern_id: str) -> Pattern:
        """Return the pattern or raise :class:`PatternNotFoundError`."""

    @abstractmethod
    def update_stats(
        self,
        pattern_id: str,
        usage_delta: int = 1,
        success_delta: int = 0,
        *,
        confidence: Optional[float] = None,
    ) -> Pattern:
        """Atomically add to the usage/success counters and return the result."""

    @abstractmethod
    def create_pattern(self, pattern: Pattern) -> str:
        """Persist a new pattern and return its id."""

    @abstractmethod
    def set_active(self, pattern_id: str, active: bool) -> Pattern:
        """Toggle the lifecycle flag."""

    @abstractmethod
    def update_rule(
        self, pattern_id: str, regex: str, value_type: Optional[ValueType] = None
    ) -> Pattern:
        """Replace the rule body and bump the pattern version."""

    @abstractmethod
    def replace_pattern(self, pattern: Pattern) -> Pattern:
        """Overwrite every column of an existing pattern in one write."""

    @abstractmethod
    def delete_pattern(self, pattern_id: str) -> bool:
        """Remove the pattern permanently."""

    def deactivate(self, pattern_id: str) -> Pattern:
        return self.set_active(pattern_id, False)

    def activate(self, pattern_id: str) -> Pattern:
        return self.set_active(pattern_id, True)


class InMemoryPatternStore(PatternStore):
    """Thread-safe dictionary backed store."""

    def __init__(self, patterns: Optional[Iterable[Pattern]] = None) -> None:
        self._patterns: Dict[str, Pattern] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[str, threading.Lock] = {}
        for pattern in patterns or ():
            self.create_pattern(pattern)

    def _row_lock(self, pattern_id: str) -> threading.Lock:
        with self._lock:
            lock = self._row_locks.get(pattern_id)
            if lock is None:
                lock = threading.Lock()
                self._row_locks[pattern_id] = lock
            return lock

    def _require(self, pattern_id: str) -> Pattern:
        pattern = self._patterns.get(pattern_id)
        if pattern is None:
            raise PatternNotFoundError(pattern_id)
        return pattern

    def list_patterns(
        self,
        supplier: SupplierFilter = None,
        field_name: Optional[str] = None,
        *,
        include_inactive: bool = True,
    ) -> List[Pattern]:
        suppliers = _supplier_set(supplier)
        with self._lock:
            snapshot = [pattern.copy() for pattern in self._patterns.values()]
        return [
            pattern
            for pattern in snapshot
            if (include_inactive or pattern.is_active)
            and (suppliers is None or pattern.supplier in suppliers)
            and (field_name is None or pattern.field_name == field_name)
        ]

    def get_pattern(self, pattern_id: str) -> Pattern:
        with self._lock:
            return self._require(pattern_id).copy()

    def update_stats(
        self,
        pattern_id: str,
        usage_delta: int = 1,
        success_delta: int = 0,
        *,
        confidence: Optional[float] = None,
    ) -> Pattern:
        _check_deltas(usage_delta, success_delta)
        with self._row_lock(pattern_id):
            with self._lock:
                current = self._require(pattern_id)
            updated = current.copy(
                usage_count=current.usage_count + usage_delta,
                success_count=current.success_count + success_delta,
                last_used=_utcnow(),
            )
            if confidence is not None:
                updated.min_confidence = (
                    confidence
                    if updated.min_confidence is None
                    else min(updated.min_confidence, confidence)
                )
                updated.max_confidence = (
                    confidence
                    if updated.max_confidence is None
                    else max(updated.max_confidence, confidence)
                )
            with self._lock:
                self._patterns[pattern_id] = updated
            return updated.copy()

    def create_pattern(self, pattern: Pattern) -> str:
        with self._lock:
            if pattern.pattern_id in self._patterns:
                raise ValueError(f"Pattern {pattern.pattern_id} already exists")
            self._patterns[pattern.pattern_id] = pattern.copy()
        return pattern.pattern_id

    def set_active(self, pattern_id: str, active: bool) -> Pattern:
        with self._row_lock(pattern_id):
            with self._lock:
                pattern = self._require(pattern_id).copy(is_active=bool(active))
                self._patterns[pattern_id] = pattern
                return pattern.copy()

    def update_rule(
        self, pattern_id: str, regex: str, value_type: Optional[ValueType] = None
    ) -> Pattern:
        with self._row_lock(pattern_id):
            with self._lock:
                current = self._require(pattern_id)
                pattern = current.copy(
                    regex=regex,
                    value_type=ValueType.coerce(value_type) if value_type else current.value_type,
                    version=current.version + 1,
                )
                self._patterns[pattern_id] = pattern
                return pattern.copy()

    def replace_pattern(self, pattern: Pattern) -> Pattern:
        with self._row_lock(pattern.pattern_id):
            with self._lock:
                self._require(pattern.pattern_id)
                self._patterns[pattern.pattern_id] = pattern.copy()
                return pattern.copy()

    def delete_pattern(self, pattern_id: str) -> bool:
        with self._lock:
            self._row_locks.pop(pattern_id, None)
            return self._patterns.pop(pattern_id, None) is not None


_COLUMNS: Tuple[str, ...] = (
    "pattern_id",
    "supplier",
    "field_name",
    "regex",
    "value_type",
    "usage_count",
    "success_count",
    "min_confidence",
    "max_confidence",
    "last_used",
    "created_at",
    "is_active",
    "version",
    "description",
    "example_match",
    "source",
)

_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


class SqlPatternStore(PatternStore):
    """Pattern store over a DB-API connection factory."""

    TABLE_NAME = "extraction_patterns"

    def __init__(
        self,
        connection_factory: Any,
        *,
        max_retries: int = 5,
        retry_backoff: float = 0.01,
    ) -> None:
        self._connection_factory = connection_factory
        self._max_retries = max(1, int(max_retries))
        self._retry_backoff = max(0.0, float(retry_backoff))
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @classmethod
    def from_settings(cls, connection_factory: Any, settings: Any) -> "SqlPatternStore":
        return cls(
            connection_factory,
            max_retries=getattr(settings, "store_update_retries", 5),
            retry_backoff=getattr(settings, "store_retry_backoff", 0.01),
        )

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _placeholder(cursor: Any) -> str:
        module_name = getattr(type(cursor), "__module__", "")
        if module_name.startswith("psycopg"):
            return "%s"
        return "?"

    @staticmethod
    def _is_transient(exc: BaseException) -> bool:
        sqlstate = getattr(exc, "pgcode", None) or getattr(exc, "sqlstate", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
        message = str(exc).lower()
        return "database is locked" in message or "database is busy" in message

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            statements = [
                f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE_NAME} (
                    pattern_id TEXT PRIMARY KEY,
                    supplier TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    regex TEXT NOT NULL,
                    value_type TEXT NOT NULL DEFAULT 'text',
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    min_confidence REAL,
                    max_confidence REAL,
                    last_used TEXT,
                    created_at TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 1,
                    description TEXT,
                    example_match TEXT,
                    source TEXT
                )
                """,
                f"CREATE INDEX IF NOT EXISTS idx_{self.TABLE_NAME}_supplier_field "
                f"ON {self.TABLE_NAME} (supplier, field_name)",
                f"CREATE INDEX IF NOT EXISTS idx_{self.TABLE_NAME}_active "
                f"ON {self.TABLE_NAME} (is_active)",
            ]
            try:
                with closing(self._connection_factory()) as conn:
                    cursor = conn.cursor()
                    for statement in statements:
                        cursor.execute(statement)
                    conn.commit()
            except Exception as exc:
                logger.exception("Failed to initialise pattern store schema")
                raise StoreUnavailableError("Pattern store schema could not be created") from exc
            self._schema_ready = True

    def _row_to_pattern(self, row: Sequence[Any]) -> Pattern:
        values = dict(zip(_COLUMNS, tuple(row)))
        values["is_active"] = bool(values.get("is_active"))
        return Pattern.from_dict(values)

    def _pattern_params(self, pattern: Pattern) -> List[Any]:
        payload = pattern.to_dict()
        params = [payload[column] for column in _COLUMNS]
        params[_COLUMNS.index("is_active")] = 1 if pattern.is_active else 0
        return params

    def _fetch(self, where: str, params: List[Any]) -> List[Pattern]:
        self._ensure_schema()
        try:
            with closing(self._connection_factory()) as conn:
                cursor = conn.cursor()
                placeholder = self._placeholder(cursor)
                sql = (
                    f"SELECT {', '.join(_COLUMNS)} FROM {self.TABLE_NAME}"
                    + (f" WHERE {where.replace('?', placeholder)}" if where else "")
                    + " ORDER BY created_at, pattern_id"
                )
                cursor.execute(sql, tuple(params))
                rows = cursor.fetchall()
        except Exception as exc:
            logger.exception("Failed to read patterns from store")
            raise StoreUnavailableError("Pattern store read failed") from exc
        return [self._row_to_pattern(row) for row in rows]

    def _write(self, sql: str, params: List[Any]) -> int:
        self._ensure_schema()
        try:
            with closing(self._connection_factory()) as conn:
                cursor = conn.cursor()
                cursor.execute(sql.replace("?", self._placeholder(cursor)), tuple(params))
                rowcount = cursor.rowcount
                conn.commit()
        except ExtractionEngineError:
            raise
        except Exception as exc:
            logger.exception("Failed to write to pattern store")
            raise StoreUnavailableError("Pattern store write failed") from exc
        return rowcount

    # ------------------------------------------------------------------
    # PatternStore API
    # ------------------------------------------------------------------
    def list_patterns(
        self,
        supplier: SupplierFilter = None,
        field_name: Optional[str] = None,
        *,
        include_inactive: bool = True,
    ) -> List[Pattern]:
        clauses: List[str] = []
        params: List[Any] = []
        suppliers = _supplier_set(supplier)
        if suppliers is not None:
            if not suppliers:
                return []
            ordered = sorted(suppliers)
            clauses.append(f"supplier IN ({', '.join('?' for _ in ordered)})")
            params.extend(ordered)
        if field_name is not None:
            clauses.append("field_name = ?")
            params.append(field_name)
        if not include_inactive:
            clauses.append("is_active = 1")
        return self._fetch(" AND ".join(clauses), params)

    def get_pattern(self, pattern_id: str) -> Pattern:
        rows = self._fetch("pattern_id = ?", [pattern_id])
        if not rows:
            raise PatternNotFoundError(pattern_id)
        return rows[0]

    def update_stats(
        self,
        pattern_id: str,
        usage_delta: int = 1,
        success_delta: int = 0,
        *,
        confidence: Optional[float] = None,
    ) -> Pattern:
        _check_deltas(usage_delta, success_delta)
        self._ensure_schema()

        assignments = [
            "usage_count = usage_count + ?",
            "success_count = success_count + ?",
            "last_used = ?",
        ]
        params: List[Any] = [int(usage_delta), int(success_delta), _utcnow().isoformat()]
        if confidence is not None:
            assignments.append(
                "min_confidence = CASE WHEN min_confidence IS NULL OR min_confidence > ? "
                "THEN ? ELSE min_confidence END"
            )
            assignments.append(
                "max_confidence = CASE WHEN max_confidence IS NULL OR max_confidence < ? "
                "THEN ? ELSE max_confidence END"
            )
            params.extend([float(confidence)] * 4)
        params.append(pattern_id)
        sql = f"UPDATE {self.TABLE_NAME} SET {', '.join(assignments)} WHERE pattern_id = ?"
        select_sql = f"SELECT {', '.join(_COLUMNS)} FROM {self.TABLE_NAME} WHERE pattern_id = ?"

        for attempt in range(1, self._max_retries + 1):
            try:
                with closing(self._connection_factory()) as conn:
                    cursor = conn.cursor()
                    placeholder = self._placeholder(cursor)
                    try:
                        cursor.execute(sql.replace("?", placeholder), tuple(params))
                        if cursor.rowcount == 0:
                            conn.rollback()
                            raise PatternNotFoundError(pattern_id)
                        cursor.execute(select_sql.replace("?", placeholder), (pattern_id,))
                        row = cursor.fetchone()
                        conn.commit()
                    except Exception:
                        conn.rollback()
                        raise
            except ExtractionEngineError:
                raise
            except Exception as exc:
                if self._is_transient(exc):
                    logger.debug(
                        "Transient conflict updating pattern %s (attempt %d/%d)",
                        pattern_id,
                        attempt,
                        self._max_retries,
                    )
                    time.sleep(self._retry_backoff * attempt)
                    continue
                logger.exception("Failed to update statistics for pattern %s", pattern_id)
                raise StoreUnavailableError("Pattern store write failed") from exc
            return self._row_to_pattern(row)

        raise ConcurrentUpdateConflict(pattern_id, self._max_retries)

    def create_pattern(self, pattern: Pattern) -> str:
        sql = (
            f"INSERT INTO {self.TABLE_NAME} ({', '.join(_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
        )
        self._write(sql, self._pattern_params(pattern))
        return pattern.pattern_id

    def set_active(self, pattern_id: str, active: bool) -> Pattern:
        updated = self._write(
            f"UPDATE {self.TABLE_NAME} SET is_active = ? WHERE pattern_id = ?",
            [1 if active else 0, pattern_id],
        )
        if updated == 0:
            raise PatternNotFoundError(pattern_id)
        return self.get_pattern(pattern_id)

    def update_rule(
        self, pattern_id: str, regex: str, value_type: Optional[ValueType] = None
    ) -> Pattern:
        if value_type is None:
            updated = self._write(
                f"UPDATE {self.TABLE_NAME} SET regex = ?, version = version + 1 "
                "WHERE pattern_id = ?",
                [regex, pattern_id],
            )
        else:
            updated = self._write(
                f"UPDATE {self.TABLE_NAME} SET regex = ?, value_type = ?, "
                "version = version + 1 WHERE pattern_id = ?",
                [regex, ValueType.coerce(value_type).value, pattern_id],
            )
        if updated == 0:
            raise PatternNotFoundError(pattern_id)
        return self.get_pattern(pattern_id)

    def replace_pattern(self, pattern: Pattern) -> Pattern:
        columns = [column for column in _COLUMNS if column != "pattern_id"]
        params = self._pattern_params(pattern)
        values = [params[_COLUMNS.index(column)] for column in columns]
        updated = self._write(
            f"UPDATE {self.TABLE_NAME} SET "
            + ", ".join(f"{column} = ?" for column in columns)
            + " WHERE pattern_id = ?",
            values + [pattern.pattern_id],
        )
        if updated == 0:
            raise PatternNotFoundError(pattern.pattern_id)
        return self.get_pattern(pattern.pattern_id)

    def delete_pattern(self, pattern_id: str) -> bool:
        deleted = self._write(
            f"DELETE FROM {self.TABLE_NAME} WHERE pattern_id = ?", [pattern_id]
        )
        return deleted > 0


__all__ = ["InMemoryPatternStore", "PatternStore", "SqlPatternStore"]
