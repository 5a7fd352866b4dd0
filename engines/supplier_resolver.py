"""Keyword based supplier resolution."""

from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from models.extraction import UNKNOWN_SUPPLIER
from repositories.supplier_keyword_repo import SupplierKeywordTable

logger = logging.getLogger(__name__)

KeywordSource = Union[SupplierKeywordTable, Mapping[str, FrozenSet[str]]]


def _keyword_regex(keyword: str) -> "re.Pattern[str]":
    tokens = [re.escape(token) for token in keyword.split()]
    body = r"\s+".join(tokens)
    return re.compile(rf"(?<!\w){body}(?!\w)", re.IGNORECASE)


class SupplierResolver:
    """Rank suppliers by how strongly their keywords occur in a text.

    Keywords match case-insensitively on token boundaries so a short
    keyword such as ``"tm"`` does not fire inside ``"atm"``.  Strength is
    the number of distinct keywords found, then the total number of
    occurrences.
    """

    def __init__(self, keyword_table: KeywordSource) -> None:
        self.keyword_table = keyword_table
        self._regex_cache: Dict[str, "re.Pattern[str]"] = {}

    def _snapshot(self) -> Dict[str, FrozenSet[str]]:
        if isinstance(self.keyword_table, SupplierKeywordTable):
            return self.keyword_table.snapshot()
        return {name: frozenset(words) for name, words in dict(self.keyword_table).items()}

    def _regex(self, keyword: str) -> "re.Pattern[str]":
        compiled = self._regex_cache.get(keyword)
        if compiled is None:
            compiled = _keyword_regex(keyword)
            self._regex_cache[keyword] = compiled
        return compiled

    def score_suppliers(self, text: str) -> List[Tuple[str, int, int]]:
        """Return ``(supplier, distinct_keywords, occurrences)`` for matches."""

        if not text or not text.strip():
            return []
        scores: List[Tuple[str, int, int]] = []
        for supplier, keywords in self._snapshot().items():
            distinct = 0
            occurrences = 0
            for keyword in keywords:
                hits = len(self._regex(keyword).findall(text))
                if hits:
                    distinct += 1
                    occurrences += hits
            if distinct:
                scores.append((supplier, distinct, occurrences))
        scores.sort(key=lambda item: (-item[1], -item[2], item[0]))
        return scores

    def resolve_supplier(self, text: str) -> List[str]:
        """Return candidate suppliers, strongest first, or ``["UNKNOWN"]``."""

        scores = self.score_suppliers(text)
        if not scores:
            logger.debug("No supplier keywords matched; falling back to %s", UNKNOWN_SUPPLIER)
            return [UNKNOWN_SUPPLIER]
        return [supplier for supplier, _, _ in scores]

    def resolve_best(self, text: str) -> str:
        return self.resolve_supplier(text)[0]

    def resolve_with_hint(self, text: str, supplier_hint: Optional[str] = None) -> List[str]:
        """Like :meth:`resolve_supplier` but with ``supplier_hint`` tried first."""

        candidates = self.resolve_supplier(text)
        hint = str(supplier_hint or "").strip()
        if not hint or hint == UNKNOWN_SUPPLIER:
            return candidates
        remaining = [name for name in candidates if name not in (hint, UNKNOWN_SUPPLIER)]
        return [hint, *remaining]


__all__ = ["SupplierResolver"]
