from __future__ import annotations

from io import StringIO

import pandas as pd
import pytest

from settlement.core.matching import preview_matches
from settlement.importers.clinic_rows import candidate_rows_from_frame, major_to_minor, normalize_columns


def _read(text: str) -> pd.DataFrame:
    return pd.read_csv(StringIO(text), dtype=str, keep_default_na=False)


def test_russian_headers_are_recognised():
    df = _read(
        "ФИО пациента,Дата рождения (ДД.ММ.ГГГГ),Дата визита,Сумма лечения (руб)\n"
        "Иванов Иван Иванович,15.03.1985,20.02.2026,\"300 000,00 ₽\"\n"
    )

    rows = candidate_rows_from_frame(df)

    assert len(rows) == 1
    row = rows[0]
    assert row.row_index == 2
    assert row.patient_name == "Иванов Иван Иванович"
    assert row.birthdate == "15.03.1985"
    assert row.visit_date == "20.02.2026"
    assert row.amount == 30_000_000


def test_rows_without_patient_name_are_skipped_but_keep_numbering():
    df = _read(
        "Patient Name,Date of Birth,Visit Date,Amount\n"
        "Anna Lee,1990-01-01,2026-02-01,5000\n"
        ",,,\n"
        "Boris Orlov,1985-06-30,2026-02-02,1250.50\n"
    )

    rows = candidate_rows_from_frame(df)

    assert [row.row_index for row in rows] == [2, 4]
    assert [row.amount for row in rows] == [500_000, 125_050]


def test_missing_required_column_is_reported():
    df = _read("Patient Name,Visit Date,Amount\nAnna Lee,2026-02-01,5000\n")

    with pytest.raises(ValueError, match="birthdate"):
        normalize_columns(df)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("300 000,00 ₽", 30_000_000),
        ("1,234.56", 123_456),
        ("12.345", 1_235),
        (5000, 500_000),
        ("2 500 руб.", 250_000),
    ],
)
def test_major_to_minor(raw, expected):
    assert major_to_minor(raw) == expected


def test_unreadable_amount_becomes_a_row_error():
    df = _read(
        "Patient Name,Date of Birth,Visit Date,Amount\n"
        "Anna Lee,1990-01-01,2026-02-01,about five thousand\n"
    )

    preview = preview_matches(1, candidate_rows_from_frame(df), [])

    assert preview.matched == []
    assert [error.row_index for error in preview.errors] == [2]
