"""Supplier → keyword table used to scope pattern selection.

The table is configuration, not engine logic: it is seeded from
``resources/reference_data/supplier_keywords.json`` or from database rows
and may be edited at runtime.  Readers work on an immutable snapshot so
resolution stays a pure function of the text and the table contents at
call time.
"""

from __future__ import annotations

import logging
import threading
from contextlib import closing
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from engines.errors import StoreUnavailableError
from utils.reference_loader import load_reference_dataset

logger = logging.getLogger(__name__)


def _clean_keywords(keywords: Iterable[Any]) -> FrozenSet[str]:
    cleaned = set()
    for keyword in keywords or ():
        text = " ".join(str(keyword or "").split()).lower()
        if text:
            cleaned.add(text)
    return frozenset(cleaned)


class SupplierKeywordTable:
    """Thread-safe mutable mapping of supplier name to keyword set."""

    def __init__(self, mapping: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._lock = threading.Lock()
        self._table: Dict[str, FrozenSet[str]] = {}
        for supplier, keywords in (mapping or {}).items():
            self.set_keywords(supplier, keywords)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def from_reference(cls, name: str = "supplier_keywords") -> "SupplierKeywordTable":
        payload = load_reference_dataset(name)
        suppliers = payload.get("suppliers", payload)
        if not isinstance(suppliers, dict):
            logger.warning("Reference dataset '%s' has no supplier mapping", name)
            suppliers = {}
        table = cls(suppliers)
        logger.info("Loaded keywords for %d suppliers from '%s'", len(table), name)
        return table

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "SupplierKeywordTable":
        """Build a table from ``{"supplier": ..., "keyword": ...}`` rows."""

        grouped: Dict[str, List[str]] = {}
        for row in rows or ():
            supplier = str(row.get("supplier") or "").strip()
            keyword = row.get("keyword")
            if supplier and keyword:
                grouped.setdefault(supplier, []).append(str(keyword))
        return cls(grouped)

    @classmethod
    def from_connection(
        cls, connection_factory: Any, table_name: str = "supplier_keywords"
    ) -> "SupplierKeywordTable":
        try:
            with closing(connection_factory()) as conn:
                cursor = conn.cursor()
                cursor.execute(f"SELECT supplier, keyword FROM {table_name}")
                rows = cursor.fetchall()
        except Exception as exc:
            logger.exception("Failed to load supplier keywords from %s", table_name)
            raise StoreUnavailableError("Supplier keyword table could not be read") from exc
        return cls.from_rows({"supplier": row[0], "keyword": row[1]} for row in rows)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def set_keywords(self, supplier: str, keywords: Iterable[str]) -> None:
        name = str(supplier or "").strip()
        if not name:
            raise ValueError("supplier name must be a non-empty string")
        cleaned = _clean_keywords(keywords)
        with self._lock:
            if cleaned:
                self._table[name] = cleaned
            else:
                self._table.pop(name, None)

    def add_keywords(self, supplier: str, keywords: Iterable[str]) -> None:
        name = str(supplier or "").strip()
        if not name:
            raise ValueError("supplier name must be a non-empty string")
        with self._lock:
            existing = self._table.get(name, frozenset())
            self._table[name] = existing | _clean_keywords(keywords)

    def remove_supplier(self, supplier: str) -> bool:
        with self._lock:
            return self._table.pop(str(supplier).strip(), None) is not None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def snapshot(self) -> Dict[str, FrozenSet[str]]:
        with self._lock:
            return dict(self._table)

    def keywords_for(self, supplier: str) -> FrozenSet[str]:
        with self._lock:
            return self._table.get(supplier, frozenset())

    def suppliers(self) -> List[str]:
        with self._lock:
            return sorted(self._table)

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)

    def __contains__(self, supplier: object) -> bool:
        with self._lock:
            return supplier in self._table


__all__ = ["SupplierKeywordTable"]
