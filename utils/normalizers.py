"""Value normalisers applied to raw pattern matches.

Each value type maps to a pure function ``(raw, options) -> value`` held in
a dispatch table.  A normaliser signals failure by raising
:class:`~engines.errors.NormalizationError`; the matcher then discards that
single match.  Applications may swap in their own function for a type
through :func:`register_normalizer`.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from engines.errors import NormalizationError
from models.extraction import ValueType

logger = logging.getLogger(__name__)

Normalizer = Callable[[str, Optional[Any]], Any]

_WHITESPACE_RE = re.compile(r"\s+")
_CURRENCY_TOKENS_RE = re.compile(
    r"(?i)(?<![a-z])(?:rm|myr|usd|eur|gbp|sgd|aud|cad|inr|idr|cr|dr)(?![a-z])|[$€£¥₹]"
)
_MONEY_CHARS_RE = re.compile(r"[^0-9.,\-]")

DATE_FORMATS = (
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%y",
    "%d-%m-%y",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%b %d %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)


def _option(options: Optional[Any], name: str, default: Any) -> Any:
    if options is None:
        return default
    value = getattr(options, name, None)
    return default if value is None else value


def normalize_text(raw: str, options: Optional[Any] = None) -> str:
    text = _WHITESPACE_RE.sub(" ", str(raw or "")).strip()
    if not text:
        raise NormalizationError(ValueType.TEXT.value, str(raw), "empty value")
    return text


def normalize_integer(raw: str, options: Optional[Any] = None) -> int:
    text = str(raw or "").strip()
    cleaned = re.sub(r"[\s,._']", "", text)
    if not re.fullmatch(r"[+-]?\d+", cleaned):
        raise NormalizationError(ValueType.INTEGER.value, text, "not an integer")
    return int(cleaned)


def normalize_currency(raw: str, options: Optional[Any] = None) -> Decimal:
    """Parse a money amount into a :class:`~decimal.Decimal`.

    Currency symbols and codes are dropped.  When both ``,`` and ``.`` are
    present the right-most one is the decimal separator; a lone ``,``
    followed by exactly two digits is treated as a decimal comma.
    Amounts in parentheses or suffixed with ``CR`` are negative.
    """

    text = str(raw or "").strip()
    if not text:
        raise NormalizationError(ValueType.CURRENCY.value, text, "empty value")

    negative = text.startswith("(") and text.endswith(")")
    if re.search(r"(?i)(?<![a-z])cr(?![a-z])", text):
        negative = True
    stripped = _CURRENCY_TOKENS_RE.sub("", text)
    stripped = _WHITESPACE_RE.sub("", stripped).strip("()")
    if stripped.startswith("-"):
        negative = True
        stripped = stripped[1:]
    if stripped.endswith("-"):
        negative = True
        stripped = stripped[:-1]
    if _MONEY_CHARS_RE.search(stripped) or not re.search(r"\d", stripped):
        raise NormalizationError(ValueType.CURRENCY.value, text, "unexpected characters")

    last_comma = stripped.rfind(",")
    last_dot = stripped.rfind(".")
    if last_comma >= 0 and last_dot >= 0:
        if last_comma > last_dot:
            stripped = stripped.replace(".", "").replace(",", ".")
        else:
            stripped = stripped.replace(",", "")
    elif last_comma >= 0:
        decimals = stripped[last_comma + 1:]
        if stripped.count(",") == 1 and len(decimals) == 2:
            stripped = stripped.replace(",", ".")
        else:
            stripped = stripped.replace(",", "")
    elif stripped.count(".") > 1:
        stripped = stripped.replace(".", "")

    try:
        amount = Decimal(stripped)
    except InvalidOperation as exc:
        raise NormalizationError(ValueType.CURRENCY.value, text, "not a number") from exc
    if not amount.is_finite():
        raise NormalizationError(ValueType.CURRENCY.value, text, "not a finite number")
    return -amount if negative else amount


def normalize_date(raw: str, options: Optional[Any] = None) -> date:
    text = _WHITESPACE_RE.sub(" ", str(raw or "")).strip().rstrip(".,")
    if not text:
        raise NormalizationError(ValueType.DATE.value, str(raw), "empty value")

    min_year = int(_option(options, "date_min_year", 1900))
    max_year = int(_option(options, "date_max_year", 2100))
    dayfirst = bool(_option(options, "date_dayfirst", True))

    parsed: Optional[date] = None
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt).date()
            break
        except ValueError:
            continue

    if parsed is None:
        # dateutil fills missing parts from today; require day and month/year
        groups = len(re.findall(r"\d+", text))
        if groups == 0 or (groups < 2 and not re.search(r"[A-Za-z]{3,}", text)):
            raise NormalizationError(ValueType.DATE.value, text, "incomplete date")
        try:
            parsed = date_parser.parse(text, dayfirst=dayfirst, fuzzy=False).date()
        except (ValueError, OverflowError) as exc:
            raise NormalizationError(ValueType.DATE.value, text, "unrecognised format") from exc

    if not min_year <= parsed.year <= max_year:
        raise NormalizationError(
            ValueType.DATE.value, text, f"year {parsed.year} outside {min_year}-{max_year}"
        )
    return parsed


_DEFAULT_NORMALIZERS: Dict[ValueType, Normalizer] = {
    ValueType.TEXT: normalize_text,
    ValueType.CURRENCY: normalize_currency,
    ValueType.DATE: normalize_date,
    ValueType.INTEGER: normalize_integer,
}

_NORMALIZERS: Dict[ValueType, Normalizer] = dict(_DEFAULT_NORMALIZERS)
_NORMALIZER_LOCK = threading.Lock()


def register_normalizer(value_type: Any, func: Normalizer) -> None:
    """Replace the normaliser used for ``value_type``."""

    if not callable(func):
        raise TypeError("normaliser must be callable")
    key = ValueType.coerce(value_type)
    with _NORMALIZER_LOCK:
        _NORMALIZERS[key] = func
    logger.debug("Registered custom normaliser for %s", key.value)


def reset_normalizers() -> None:
    """Restore the built-in normalisers (primarily for tests)."""

    with _NORMALIZER_LOCK:
        _NORMALIZERS.clear()
        _NORMALIZERS.update(_DEFAULT_NORMALIZERS)


def get_normalizer(value_type: Any) -> Normalizer:
    return _NORMALIZERS[ValueType.coerce(value_type)]


def normalize_value(value_type: Any, raw: str, options: Optional[Any] = None) -> Any:
    """Normalise ``raw`` according to ``value_type``.

    Any exception raised by a (possibly custom) normaliser is reported as a
    :class:`NormalizationError` so callers only deal with one failure type.
    """

    key = ValueType.coerce(value_type)
    func = get_normalizer(key)
    try:
        return func(raw, options)
    except NormalizationError:
        raise
    except Exception as exc:
        raise NormalizationError(key.value, str(raw), str(exc)) from exc


def values_equal(value_type: Any, left: Any, right: Any, options: Optional[Any] = None) -> bool:
    """Compare two values after normalising both sides.

    Text comparison ignores case.  Values that fail to normalise fall back
    to a whitespace-insensitive string comparison.
    """

    key = ValueType.coerce(value_type)

    def _coerce(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return normalize_value(key, value, options)
            except NormalizationError:
                return _WHITESPACE_RE.sub(" ", value).strip()
        return value

    left_value = _coerce(left)
    right_value = _coerce(right)
    if isinstance(left_value, str) and isinstance(right_value, str):
        return left_value.casefold() == right_value.casefold()
    return left_value == right_value


__all__ = [
    "DATE_FORMATS",
    "get_normalizer",
    "normalize_currency",
    "normalize_date",
    "normalize_integer",
    "normalize_text",
    "normalize_value",
    "register_normalizer",
    "reset_normalizers",
    "values_equal",
]
