"""Map a clinic's treated-patients table onto candidate treatment rows.

File parsing happens upstream; this module only sees a loaded DataFrame.
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

import pandas as pd

from settlement.core.matching import CandidateRow

CLINIC_COLUMNS: dict[str, dict[str, Any]] = {
    "patient_name": {
        "aliases": ["фио пациента", "фио", "пациент", "patient name", "patient", "full name", "name"],
        "required": True,
    },
    "birthdate": {
        "aliases": [
            "дата рождения (дд.мм.гггг)",
            "дата рождения",
            "birthdate",
            "birth date",
            "date of birth",
            "dob",
        ],
        "required": True,
    },
    "visit_date": {
        "aliases": [
            "дата визита (дд.мм.гггг)",
            "дата визита",
            "дата лечения",
            "visit date",
            "treatment date",
            "visit_date",
        ],
        "required": True,
    },
    "amount": {
        "aliases": ["сумма лечения (руб)", "сумма лечения", "сумма", "amount", "treatment amount", "total"],
        "required": True,
    },
}

_CURRENCY_NOISE = re.compile(r"(₽|руб\.?|rub|\s)", re.IGNORECASE)


def _row_number(idx: Any) -> int:
    try:
        return int(idx) + 2
    except (TypeError, ValueError):
        return 0


def resolve_column(df: pd.DataFrame, aliases: Iterable[str]) -> str | None:
    lookup = {str(col).strip().lower(): str(col) for col in df.columns}
    for alias in aliases:
        key = alias.strip().lower()
        if key in lookup:
            return lookup[key]
    return None


def normalize_columns(df: pd.DataFrame, spec: dict[str, dict[str, Any]] = CLINIC_COLUMNS) -> pd.DataFrame:
    mapping: dict[str, str] = {}
    for canonical, column_spec in spec.items():
        source = resolve_column(df, column_spec["aliases"])
        if source:
            mapping[source] = canonical
        elif column_spec.get("required", False):
            raise ValueError(f"Missing required column '{canonical}' in clinic upload")
    renamed = df.rename(columns=mapping)
    return renamed[list(mapping.values())]


def clean_string(raw: Any) -> str | None:
    if raw is None or (not isinstance(raw, str) and pd.isna(raw)):
        return None
    text = str(raw).strip()
    return text or None


def major_to_minor(raw: Any) -> Any:
    """Convert a major-unit amount ("300 000,00 ₽", 5000, 12.5) to minor units.

    Values that cannot be read as a number are returned unchanged so the
    matcher reports them as row errors.
    """

    if raw is None or isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and pd.isna(raw):
        return None
    text = _CURRENCY_NOISE.sub("", str(raw))
    if "," in text and "." in text:
        text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        value = Decimal(text)
    except (InvalidOperation, ValueError):
        return raw
    if not value.is_finite():
        return raw
    return int((value * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if not isinstance(value, str) and pd.isna(value):
        return None
    return value


def candidate_rows_from_frame(df: pd.DataFrame) -> list[CandidateRow]:
    """Rows with no patient name are skipped; row numbers match the spreadsheet (header is row 1)."""

    normalized = normalize_columns(df)
    records = normalized.dropna(how="all")

    rows: list[CandidateRow] = []
    for idx, row in records.iterrows():
        name = clean_string(row.get("patient_name"))
        if name is None:
            continue
        rows.append(
            CandidateRow(
                row_index=_row_number(idx),
                patient_name=name,
                birthdate=_cell(row.get("birthdate")),
                visit_date=_cell(row.get("visit_date")),
                amount=major_to_minor(_cell(row.get("amount"))),
            )
        )
    return rows
