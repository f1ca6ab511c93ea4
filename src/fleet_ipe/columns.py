"""Column classifier — map header cells to semantic roles.

Classification never fails. It runs three passes over the header row:

1. keyword patterns, each header going to the first free role it matches;
2. exact-name matches for the month, vehicle-id, cost and description roles;
3. guesses for whatever essential role is still missing.

User overrides (``role=Header text``) are applied on top of the result.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace

from fleet_ipe.models import ROLE_NAMES, CellValue, ColumnRoles
from fleet_ipe.parsing import strip_accents

logger = logging.getLogger(__name__)

_WS = re.compile(r"\s+")

ROLE_PATTERNS: dict[str, re.Pattern[str]] = {
    "month": re.compile(r"mois|month|date|période|period"),
    "vehicle_id": re.compile(r"matricule|immatriculation|numéro|véhicule|vehicle|registration|number"),
    "liters": re.compile(r"consommation.*l|consumption.*l|carburant|fuel|essence|diesel|gasoil|gazole"),
    "tep": re.compile(r"consommation.*tep|consumption.*tep|tep"),
    "cost": re.compile(r"coût|cout|cost|dt|dinar|prix|price"),
    "distance": re.compile(r"kilométrage|kilometrage|km|distance|parcouru|traveled"),
    "tonnage": re.compile(r"produit|product|transporté|transported|tonne|ton|charge|weight|poids"),
    "index": re.compile(r"ipe|indice|index|performance|énergétique|energetique|l/100"),
    "description": re.compile(r"description|type|label|désignation|designation"),
}

MONTH_NAMES: tuple[str, ...] = (
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

_MONTH_ABBREVIATIONS = re.compile(
    r"\b(jan|janv|fev|fevr|feb|mar|avr|apr|juil|jul|jun|aou|aug|sep|sept|oct|nov|dec)\b"
)


def normalize_header(text: str) -> str:
    """Lower-case *text*, trim it and collapse inner whitespace runs to one space."""
    return _WS.sub(" ", text).strip().lower()


def _header_texts(header: Sequence[CellValue]) -> list[str | None]:
    """Normalized text per header cell, ``None`` for cells that carry no value."""
    texts: list[str | None] = []
    for cell in header:
        if cell.value is None:
            texts.append(None)
        else:
            texts.append(normalize_header(cell.as_text))
    return texts


def _match_patterns(texts: list[str | None], found: dict[str, int | None]) -> None:
    for i, text in enumerate(texts):
        if text is None:
            continue
        for role in ROLE_NAMES:
            if found[role] is None and ROLE_PATTERNS[role].search(text):
                found[role] = i
                logger.debug("Column %d %r -> %s", i, text, role)
                break


def _match_exact(texts: list[str | None], found: dict[str, int | None]) -> None:
    for i, text in enumerate(texts):
        if text is None:
            continue
        if found["month"] is None and text in ("mois", "month"):
            found["month"] = i
        elif found["vehicle_id"] is None and text == "matricule":
            found["vehicle_id"] = i
        elif found["cost"] is None and (text in ("cout", "coût") or "dt" in text or "tnd" in text):
            found["cost"] = i
        elif found["description"] is None and text in ("description", "type", "désignation", "designation"):
            found["description"] = i
        else:
            continue
        logger.debug("Column %d %r matched by exact name", i, text)


def _month_name_column(texts: list[str | None]) -> int | None:
    for i, text in enumerate(texts):
        if text is None:
            continue
        if any(name in text for name in MONTH_NAMES):
            return i
        if _MONTH_ABBREVIATIONS.search(strip_accents(text)):
            return i
    return None


def _guess_missing(texts: list[str | None], found: dict[str, int | None]) -> None:
    if found["month"] is None:
        guessed = _month_name_column(texts)
        found["month"] = guessed if guessed is not None else 0
        logger.debug("Guessed month column %d", found["month"])

    if found["vehicle_id"] is None:
        found["vehicle_id"] = 1 if found["month"] == 0 else 0
        logger.debug("Guessed vehicle id column %d", found["vehicle_id"])

    if found["liters"] is None:
        for i, text in enumerate(texts):
            if text is not None and ("l" in text or "litre" in text):
                found["liters"] = i
                logger.debug("Guessed liters column %d %r", i, text)
                break


def classify_columns(header: Sequence[CellValue], sheet_name: str = "") -> ColumnRoles:
    """Assign a column index to each role from the *header* row of a sheet."""
    texts = _header_texts(header)
    logger.debug("Headers in sheet %r: %s", sheet_name, texts)

    found: dict[str, int | None] = dict.fromkeys(ROLE_NAMES)
    _match_patterns(texts, found)
    if found["month"] is None or found["vehicle_id"] is None or found["cost"] is None:
        _match_exact(texts, found)
    _guess_missing(texts, found)

    roles = ColumnRoles(**found)
    if not roles.is_valid:
        logger.warning(
            "Could not identify all required columns in sheet %r (missing: %s); continuing best-effort",
            sheet_name,
            ", ".join(roles.missing_roles()),
        )
    return roles


# ── Overrides ────────────────────────────────────────────────────


def parse_role_map(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``role=Header text`` lines into a role -> header mapping.

    Blank lines and ``#`` comments are ignored. Role names are matched
    case-insensitively against the ColumnRoles fields.

    Raises
    ------
    ValueError
        On a line without ``=`` or with an unknown role.
    """
    mapping: dict[str, str] = {}
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            raise ValueError(f"Invalid mapping {raw!r}: expected role=Header")
        role, _, header = line.partition("=")
        role = role.strip().lower().replace("-", "_")
        header = header.strip()
        if role not in ROLE_NAMES:
            raise ValueError(f"Unknown role {role!r}. Expected one of: {', '.join(ROLE_NAMES)}")
        if not header:
            raise ValueError(f"Invalid mapping {raw!r}: header text is empty")
        mapping[role] = header
    return mapping


def apply_overrides(
    roles: ColumnRoles,
    header: Sequence[CellValue],
    mapping: Mapping[str, str],
) -> tuple[ColumnRoles, list[str]]:
    """Pin roles named in *mapping* to the first header with the same normalized text.

    Returns the updated roles and one warning per header that could not be found.
    """
    texts = _header_texts(header)
    pinned: dict[str, int] = {}
    warnings: list[str] = []
    for role, wanted in mapping.items():
        target = normalize_header(wanted)
        try:
            pinned[role] = texts.index(target)
        except ValueError:
            warnings.append(f"Override {role}={wanted!r}: no such header")
            logger.warning("Override %s=%r matched no header", role, wanted)
    if not pinned:
        return roles, warnings
    return replace(roles, **pinned), warnings
