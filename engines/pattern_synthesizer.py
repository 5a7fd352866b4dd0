"""Derive a new extraction pattern from a user correction.

Heuristic
---------
1. Locate the corrected value in the source text: exact, case-insensitive,
   whitespace-flexible, and finally (for non-text types) by scanning
   value-shaped tokens and comparing normalised values.
2. Build a label anchor from the context before the value on the same
   line, keeping at most ``synthesis_context_tokens`` word tokens and
   ``synthesis_max_context_chars`` characters, and ignoring anything before
   a wide column gap.  When the value starts its line the tail of the
   previous non-empty line is the anchor and a line break joins the two.
3. Generalise the value by shape: character runs become ``\\d+`` or
   ``[A-Za-z]+`` with punctuation kept literally, money becomes a numeric
   class, multi-word text captures a space-separated run or the rest of
   the line.
4. Keep the first anchor/value combination that compiles and reproduces
   the corrected value from the source text, preferring combinations that
   produce exactly one distinct value.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterator, List, Optional, Tuple

from engines.errors import NormalizationError
from models.extraction import Pattern, ValueType, new_pattern_id
from utils.normalizers import normalize_value, values_equal

logger = logging.getLogger(__name__)

_COLUMN_GAP_RE = re.compile(r"\t|\s{3,}")
_TOKEN_RE = re.compile(r"[A-Za-z0-9]+|[^\sA-Za-z0-9]")

_SCAN_PATTERNS = {
    ValueType.CURRENCY: re.compile(r"\d[\d,.]*\d|\d"),
    ValueType.INTEGER: re.compile(r"\d[\d,]*"),
    ValueType.DATE: re.compile(
        r"\d{1,4}[/\-.]\d{1,2}[/\-.]\d{1,4}|\d{1,2}\s+[A-Za-z]{3,9},?\s+\d{2,4}"
        r"|[A-Za-z]{3,9}\s+\d{1,2},?\s+\d{2,4}"
    ),
}


def _setting(settings: Any, name: str, default: Any) -> Any:
    value = getattr(settings, name, None) if settings is not None else None
    return default if value is None else value


def shape_regex(raw: str) -> str:
    """Generalise a single token by character class runs."""

    parts: List[str] = []
    for run in re.finditer(r"\d+|[A-Za-z]+|\s+|.", raw):
        chunk = run.group(0)
        if chunk.isdigit():
            parts.append(r"\d+")
        elif chunk.isalpha():
            parts.append(r"[A-Za-z]+")
        elif chunk.isspace():
            parts.append(r"\s+")
        else:
            parts.append(re.escape(chunk))
    return "".join(parts)


class PatternSynthesizer:
    """Synthesise capture patterns bounded by the corrected value's context."""

    def __init__(self, settings: Any = None) -> None:
        self.settings = settings

    # ------------------------------------------------------------------
    # Locating the value
    # ------------------------------------------------------------------
    def locate_value(
        self, text: str, value: str, value_type: ValueType = ValueType.TEXT
    ) -> Optional[Tuple[int, int]]:
        target = str(value or "").strip()
        if not text or not target:
            return None

        index = text.find(target)
        if index >= 0:
            return index, index + len(target)

        match = re.search(re.escape(target), text, re.IGNORECASE)
        if match:
            return match.span()

        tokens = target.split()
        if len(tokens) > 1:
            flexible = r"\s+".join(re.escape(token) for token in tokens)
            match = re.search(flexible, text, re.IGNORECASE)
            if match:
                return match.span()

        scanner = _SCAN_PATTERNS.get(value_type)
        if scanner is None:
            return None
        for candidate in scanner.finditer(text):
            if values_equal(value_type, candidate.group(0), target, self.settings):
                return candidate.span()
        return None

    # ------------------------------------------------------------------
    # Regex construction
    # ------------------------------------------------------------------
    def _label_tokens(self, context: str) -> List[str]:
        max_tokens = int(_setting(self.settings, "synthesis_context_tokens", 4))
        max_chars = int(_setting(self.settings, "synthesis_max_context_chars", 40))

        trimmed = context.rstrip()
        segments = _COLUMN_GAP_RE.split(trimmed)
        segment = segments[-1] if segments else ""
        tokens = _TOKEN_RE.findall(segment)

        kept: List[str] = []
        words = 0
        length = 0
        for token in reversed(tokens):
            if token.isalnum():
                if words >= max_tokens:
                    break
                words += 1
            length += len(token) + 1
            if length > max_chars and kept:
                break
            kept.insert(0, token)
        while kept and not kept[0].isalnum():
            kept.pop(0)
        if not any(not token.isdigit() for token in kept if token.isalnum()):
            return []
        return kept

    @staticmethod
    def _label_regex(tokens: List[str]) -> str:
        body = ""
        previous: Optional[str] = None
        for token in tokens:
            if previous is not None:
                body += r"\s+" if previous.isalnum() and token.isalnum() else r"\s*"
            body += re.escape(token) if token.isalnum() else f"{re.escape(token)}?"
            previous = token
        return r"(?<![A-Za-z0-9])" + body

    def _anchors(self, text: str, start: int) -> Iterator[Tuple[str, str]]:
        """Yield ``(anchor_regex, description)`` from most to least specific."""

        line_start = text.rfind("\n", 0, start) + 1
        inline = text[line_start:start]
        tokens = self._label_tokens(inline) if inline.strip() else []
        if tokens:
            for size in range(len(tokens), 0, -1):
                subset = tokens[-size:]
                if not subset[0].isalnum():
                    continue
                yield self._label_regex(subset) + r"[ \t]*", " ".join(subset)
            return

        if inline.strip():
            return
        previous_end = line_start - 1
        while previous_end > 0:
            previous_start = text.rfind("\n", 0, previous_end) + 1
            previous_line = text[previous_start:previous_end]
            if previous_line.strip():
                tokens = self._label_tokens(previous_line)
                if tokens:
                    for size in range(len(tokens), 0, -1):
                        subset = tokens[-size:]
                        if not subset[0].isalnum():
                            continue
                        yield (
                            self._label_regex(subset) + r"[^\S\n]*\n[ \t]*",
                            " ".join(subset),
                        )
                return
            previous_end = previous_start - 1

    @staticmethod
    def _value_regexes(raw: str, value_type: ValueType) -> List[str]:
        if value_type == ValueType.CURRENCY:
            return [r"(\d[\d,.]*\d|\d)"]
        if value_type == ValueType.INTEGER:
            return [r"(\d[\d,]*)"]
        if value_type == ValueType.DATE:
            return [f"({shape_regex(raw)})"]

        if "\n" in raw:
            extra_lines = raw.count("\n")
            return [rf"([^\n]*\S(?:\n[^\n]*\S){{{extra_lines}}})"]
        if raw.split() == [raw]:
            return [f"({shape_regex(raw)})", r"(\S+)"]
        return [r"(\S+(?: \S+)*)", r"([^\n]*\S)"]

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def _distinct_values(
        self, regex: str, text: str, value_type: ValueType
    ) -> Optional[List[Any]]:
        try:
            compiled = re.compile(regex, re.MULTILINE)
        except re.error:
            return None
        values: List[Any] = []
        for match in compiled.finditer(text):
            raw = match.group(1)
            if raw is None:
                continue
            try:
                value = normalize_value(value_type, raw, self.settings)
            except NormalizationError:
                continue
            if value not in values:
                values.append(value)
        return values

    def synthesize(
        self,
        text: str,
        corrected_value: str,
        *,
        supplier: str,
        field_name: str,
        value_type: ValueType = ValueType.TEXT,
    ) -> Optional[Pattern]:
        """Return a new pattern reproducing ``corrected_value`` or ``None``."""

        value_type = ValueType.coerce(value_type)
        span = self.locate_value(text, corrected_value, value_type)
        if span is None:
            logger.info(
                "Corrected value for %s/%s not found in source text", supplier, field_name
            )
            return None

        start, end = span
        raw = text[start:end]
        try:
            expected = normalize_value(value_type, str(corrected_value), self.settings)
        except NormalizationError:
            logger.info(
                "Corrected value %r for %s/%s is not a valid %s",
                corrected_value,
                supplier,
                field_name,
                value_type.value,
            )
            return None

        fallback: Optional[Tuple[str, str]] = None
        for anchor, label in self._anchors(text, start):
            for value_regex in self._value_regexes(raw, value_type):
                regex = f"(?i){anchor}{value_regex}"
                values = self._distinct_values(regex, text, value_type)
                if not values or not any(
                    values_equal(value_type, found, expected, self.settings) for found in values
                ):
                    continue
                if len(values) == 1:
                    return self._build(regex, label, raw, supplier, field_name, value_type)
                if fallback is None:
                    fallback = (regex, label)

        if fallback is not None:
            return self._build(fallback[0], fallback[1], raw, supplier, field_name, value_type)

        logger.info("No anchor context reproduces the corrected value for %s/%s", supplier, field_name)
        return None

    @staticmethod
    def _build(
        regex: str,
        label: str,
        raw: str,
        supplier: str,
        field_name: str,
        value_type: ValueType,
    ) -> Pattern:
        return Pattern(
            pattern_id=new_pattern_id(),
            supplier=supplier,
            field_name=field_name,
            regex=regex,
            value_type=value_type,
            usage_count=1,
            success_count=1,
            description=f"Learned from correction after '{label}'",
            example_match=raw,
            source="correction",
        )


__all__ = ["PatternSynthesizer", "shape_regex"]
