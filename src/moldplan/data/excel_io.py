from __future__ import annotations

import io
import re
import unicodedata
from datetime import date, datetime, time

import pandas as pd


def read_excel_bytes(content: bytes) -> pd.DataFrame:
    """Read .xlsx bytes into a DataFrame (first sheet only)."""
    bio = io.BytesIO(content)
    df = pd.read_excel(bio)
    df.columns = [str(c).strip() for c in df.columns]
    return df


def normalize_col_name(name: str) -> str:
    """Normalize Excel column names to an ASCII snake_case token ("Fecha Entrega" -> "fecha_entrega")."""

    s = str(name or "").strip().lower()
    s = unicodedata.normalize("NFKD", s)
    s = "".join(ch for ch in s if not unicodedata.combining(ch))
    s = s.replace("\u00a0", " ")
    s = re.sub(r"[^a-z0-9 ]+", " ", s)
    s = re.sub(r"\s+", "_", s).strip("_")
    return s


def normalize_columns(df: pd.DataFrame, aliases: dict[str, str] | None = None) -> pd.DataFrame:
    df = df.copy()
    cols = [normalize_col_name(c) for c in df.columns]
    if aliases:
        cols = [aliases.get(c, c) for c in cols]
    df.columns = cols
    return df


def is_blank(value) -> bool:
    if value is None:
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        pass
    return str(value).strip() == ""


_DIGITS_RE = re.compile(r"^-?\d+$")


def parse_int_strict(value, *, field: str) -> int:
    """Parse an integer cell; accepts ints, floats like 120.0 and digit-only strings."""
    if is_blank(value):
        raise ValueError(f"{field} vacío")

    if isinstance(value, bool):
        raise ValueError(f"{field} inválido: {value!r}")

    if isinstance(value, int):
        return int(value)

    if isinstance(value, float):
        if float(value).is_integer():
            return int(value)
        raise ValueError(f"{field} inválido (no entero): {value!r}")

    s = str(value).strip()
    if _DIGITS_RE.match(s):
        return int(s)
    try:
        f = float(s.replace(",", "."))
    except ValueError:
        raise ValueError(f"{field} inválido: {value!r}") from None
    if f.is_integer():
        return int(f)
    raise ValueError(f"{field} inválido (no entero): {value!r}")


def coerce_datetime(value, *, field: str = "due_date") -> datetime:
    """Coerce Excel/pandas date-ish values to a naive datetime.

    Plain dates become end-of-day so a plan due "2026-11-03" may still finish that day.
    Excel date cells arrive as midnight timestamps and are treated as plain dates.
    """
    if is_blank(value):
        raise ValueError(f"{field} vacío")

    if hasattr(value, "to_pydatetime"):
        value = value.to_pydatetime()

    if isinstance(value, datetime):
        value = value.replace(tzinfo=None)
        if value.time() == time(0, 0):
            return datetime.combine(value.date(), time(23, 59, 59))
        return value

    if isinstance(value, date):
        return datetime.combine(value, time(23, 59, 59))

    s = str(value).strip()
    try:
        parsed = datetime.fromisoformat(s)
        if len(s) <= 10:
            return datetime.combine(parsed.date(), time(23, 59, 59))
        return parsed.replace(tzinfo=None)
    except ValueError:
        pass

    for fmt in ("%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d"):
        try:
            return datetime.combine(datetime.strptime(s, fmt).date(), time(23, 59, 59))
        except ValueError:
            continue

    raise ValueError(f"{field} inválido: {value!r}")


def coerce_str(value) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
