from __future__ import annotations

import io
from datetime import date, datetime

import pandas as pd
import pytest

from moldplan import api
from moldplan.data.db import Db
from moldplan.data.excel_io import coerce_datetime, normalize_col_name, parse_int_strict
from moldplan.data.repository import Repository


@pytest.fixture
def repo(tmp_path):
    db = Db(tmp_path / "test.db")
    db.ensure_schema()
    r = Repository(db)
    r.upsert_material(material_code="MAT-A")
    r.upsert_material(material_code="MAT-B")
    return r


def _xlsx(rows: list[dict]) -> bytes:
    bio = io.BytesIO()
    pd.DataFrame(rows).to_excel(bio, index=False, engine="openpyxl")
    return bio.getvalue()


def test_import_accepts_spanish_headers(repo):
    content = _xlsx(
        [
            {"Plan": "PL-100", "Material": "MAT-A", "Cantidad": 120, "Fecha Entrega": datetime(2026, 4, 1, 18, 0), "Cliente": "ACME"},
            {"Plan": "PL-101", "Material": "MAT-B", "Cantidad": 80.0, "Fecha Entrega": datetime(2026, 4, 3, 12, 0), "Cliente": None},
        ]
    )
    assert repo.import_plans_excel_bytes(content=content) == 2

    rows = repo.get_plans_rows()
    assert [r["plan_number"] for r in rows] == ["PL-100", "PL-101"]
    assert rows[0]["material_code"] == "MAT-A"
    assert rows[0]["due_date"] == "2026-04-01T18:00:00"
    assert rows[0]["customer"] == "ACME"
    assert rows[1]["planned_quantity"] == 80
    assert all(r["status"] == "unscheduled" for r in rows)


def test_import_is_all_or_nothing(repo):
    content = _xlsx(
        [
            {"plan_number": "PL-200", "material_code": "MAT-A", "planned_quantity": 10, "due_date": "2026-04-01"},
            {"plan_number": "PL-201", "material_code": "NOPE", "planned_quantity": 10, "due_date": "2026-04-01"},
        ]
    )
    with pytest.raises(ValueError, match="Fila 3"):
        repo.import_plans_excel_bytes(content=content)
    assert repo.get_plans_rows() == []


def test_import_rejects_missing_columns_and_bad_quantity(repo):
    out = api.import_plans_excel(repo, _xlsx([{"plan_number": "PL-1", "material_code": "MAT-A"}]))
    assert out["success"] is False
    assert "planned_quantity" in out["message"]

    out = api.import_plans_excel(
        repo,
        _xlsx([{"plan_number": "PL-1", "material_code": "MAT-A", "planned_quantity": 0, "due_date": "2026-04-01"}]),
    )
    assert out["success"] is False
    assert out["status_code"] == 400


def test_duplicate_plan_number_rolls_back(repo):
    content = _xlsx(
        [
            {"plan_number": "PL-300", "material_code": "MAT-A", "planned_quantity": 10, "due_date": "2026-04-01"},
            {"plan_number": "PL-300", "material_code": "MAT-B", "planned_quantity": 10, "due_date": "2026-04-02"},
        ]
    )
    with pytest.raises(ValueError, match="Fila 3"):
        repo.import_plans_excel_bytes(content=content)
    assert repo.get_plans_rows() == []


def test_normalize_col_name():
    assert normalize_col_name("Fecha Entrega") == "fecha_entrega"
    assert normalize_col_name("  Código Material ") == "codigo_material"
    assert normalize_col_name("Nº Plan") == "no_plan"


def test_parse_int_strict():
    assert parse_int_strict("12", field="q") == 12
    assert parse_int_strict(12.0, field="q") == 12
    with pytest.raises(ValueError):
        parse_int_strict(12.5, field="q")
    with pytest.raises(ValueError):
        parse_int_strict("", field="q")


def test_coerce_datetime_plain_dates_are_end_of_day():
    assert coerce_datetime("2026-04-01") == datetime(2026, 4, 1, 23, 59, 59)
    assert coerce_datetime(date(2026, 4, 1)) == datetime(2026, 4, 1, 23, 59, 59)
    assert coerce_datetime("01/04/2026") == datetime(2026, 4, 1, 23, 59, 59)
    assert coerce_datetime("2026-04-01T10:30:00") == datetime(2026, 4, 1, 10, 30)
    with pytest.raises(ValueError):
        coerce_datetime("mañana")


def test_excel_date_cells_and_text_dates_share_end_of_day(repo):
    content = _xlsx(
        [
            {"plan_number": "PL-400", "material_code": "MAT-A", "planned_quantity": 10, "due_date": date(2026, 4, 1)},
            {"plan_number": "PL-401", "material_code": "MAT-B", "planned_quantity": 10, "due_date": "2026-04-01"},
        ]
    )
    assert repo.import_plans_excel_bytes(content=content) == 2
    due = {r["plan_number"]: r["due_date"] for r in repo.get_plans_rows()}
    assert due == {"PL-400": "2026-04-01T23:59:59", "PL-401": "2026-04-01T23:59:59"}


def test_coerce_datetime_midnight_timestamp_is_a_plain_date():
    assert coerce_datetime(pd.Timestamp("2026-04-01")) == datetime(2026, 4, 1, 23, 59, 59)
    assert coerce_datetime(pd.Timestamp("2026-04-01 06:15")) == datetime(2026, 4, 1, 6, 15)
