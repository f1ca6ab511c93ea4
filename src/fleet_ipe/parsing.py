"""Locale-tolerant parsing of numbers, currency amounts and month labels.

None of these functions raise: unparseable input degrades to ``0.0`` (or
month number ``0``) so that one bad cell never sinks a whole sheet.
"""

from __future__ import annotations

import re
import unicodedata

from fleet_ipe.models import CellKind, CellValue

_STRICT_DECIMAL = re.compile(r"^\d+(\.\d+)?$")
_NUMBER_NOISE = re.compile(r"[^0-9.,\-]")
_CURRENCY_NOISE = re.compile(r"[^0-9.\-]")
_CURRENCY_TOKENS = re.compile(r"TND|DT|DINAR|د\.ت|دينار", re.IGNORECASE)


def _safe_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        return 0.0


def parse_number(cell: CellValue) -> float:
    """Read a numeric quantity (liters, km, tonnes...) from *cell*.

    Text is cleaned of everything but digits, separators and the minus sign,
    and a comma is taken as the decimal separator.
    """
    if cell.kind is CellKind.NUMBER:
        return float(cell.value)  # type: ignore[arg-type]
    if cell.kind is CellKind.BOOLEAN:
        return 1.0 if cell.value else 0.0
    if cell.kind is not CellKind.TEXT:
        return 0.0

    text = str(cell.value).strip()
    if _STRICT_DECIMAL.match(text):
        return float(text)
    cleaned = _NUMBER_NOISE.sub("", text).replace(",", ".")
    return _safe_float(cleaned)


def parse_currency(cell: CellValue) -> float:
    """Read a money amount, with or without a dinar marker, from *cell*.

    ``"6,368.16 TND"`` reads as 6368.16 (comma before dot is a thousands
    separator) and ``"100,5 DT"`` as 100.5 (a lone comma is the decimal
    separator). ``"1.234,56"`` is not understood and yields 0.0.
    """
    if cell.kind is CellKind.NUMBER:
        return float(cell.value)  # type: ignore[arg-type]

    text = _CURRENCY_TOKENS.sub("", cell.as_text).strip()
    if not text:
        return 0.0
    comma, dot = text.find(","), text.find(".")
    if comma != -1 and dot != -1 and comma < dot:
        text = text.replace(",", "")
    elif comma != -1:
        text = text.replace(",", ".")
    return _safe_float(_CURRENCY_NOISE.sub("", text))


# ── Month labels ─────────────────────────────────────────────────

_FULL_MONTHS: dict[str, int] = {
    "janvier": 1,
    "fevrier": 2,
    "mars": 3,
    "avril": 4,
    "mai": 5,
    "juin": 6,
    "juillet": 7,
    "aout": 8,
    "septembre": 9,
    "octobre": 10,
    "novembre": 11,
    "decembre": 12,
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

# Checked in order; "juil" must win over "jui" style ambiguities.
_MONTH_PREFIXES: tuple[tuple[str, int], ...] = (
    ("jan", 1),
    ("fev", 2),
    ("feb", 2),
    ("mar", 3),
    ("avr", 4),
    ("apr", 4),
    ("mai", 5),
    ("may", 5),
    ("juil", 7),
    ("jul", 7),
    ("juin", 6),
    ("jun", 6),
    ("aou", 8),
    ("aug", 8),
    ("sep", 9),
    ("oct", 10),
    ("nov", 11),
    ("dec", 12),
)


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def month_number(label: str) -> int:
    """Map a month label to 1..12, or 0 when it is not recognised.

    Accepts French and English names (accents optional), common
    abbreviations and the numeric labels ``"01"``..``"12"``.
    """
    text = strip_accents(label or "").strip().lower()
    if not text:
        return 0
    if text in _FULL_MONTHS:
        return _FULL_MONTHS[text]
    if text.isdigit():
        number = int(text)
        return number if 1 <= number <= 12 else 0
    for prefix, number in _MONTH_PREFIXES:
        if text.startswith(prefix):
            return number
    return 0
