"""
export_generator.py - Render a full table scan as a downloadable CSV, JSON or SQL file.

The caller supplies the column order (from the result-set description)
and the row dicts; nothing here touches a database.
"""
import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List

from fastapi.encoders import jsonable_encoder


class ExportFormat(str, Enum):
    CSV  = "csv"
    JSON = "json"
    SQL  = "sql"


MEDIA_TYPES = {
    ExportFormat.CSV:  "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.SQL:  "application/sql",
}


@dataclass
class ExportFile:
    content: str
    media_type: str
    filename: str

    @property
    def content_disposition(self) -> str:
        return f'attachment; filename="{self.filename}"'


# ─────────────────────────────────────────────────────────────────────────────
# CSV
# ─────────────────────────────────────────────────────────────────────────────

def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def csv_field(value: Any) -> str:
    """A single CSV field: quoted only when it holds a comma, a quote or a newline."""
    text = _text(value)
    if any(ch in text for ch in ',"\n'):
        return '"' + text.replace('"', '""') + '"'
    return text


def generate_csv_export(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    """Header row, then one line per row; None is an empty field."""
    lines = [",".join(csv_field(col) for col in columns)]
    lines.extend(",".join(csv_field(row.get(col)) for col in columns) for row in rows)
    return "\n".join(lines)


# ─────────────────────────────────────────────────────────────────────────────
# JSON
# ─────────────────────────────────────────────────────────────────────────────

def generate_json_export(rows: List[Dict[str, Any]]) -> str:
    """Pretty-printed array of row objects, encoded the same way API responses are."""
    return json.dumps(jsonable_encoder(rows), indent=2, ensure_ascii=False)


# ─────────────────────────────────────────────────────────────────────────────
# SQL
# ─────────────────────────────────────────────────────────────────────────────

def sql_literal(value: Any) -> str:
    """NULL for None, bare numbers, everything else single-quoted with quotes doubled."""
    if value is None:
        return "NULL"
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    return "'" + _text(value).replace("'", "''") + "'"


def generate_sql_export(table: str, columns: List[str], rows: List[Dict[str, Any]]) -> str:
    """One INSERT statement per row."""
    col_list = ", ".join(columns)
    return "\n".join(
        f"INSERT INTO {table} ({col_list}) VALUES "
        f"({', '.join(sql_literal(row.get(col)) for col in columns)});"
        for row in rows
    )


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────────────────────────────────────

def generate_export(table: str, columns: List[str], rows: List[Dict[str, Any]], fmt: str) -> ExportFile:
    """Render rows in `fmt`.  Raises ValueError for an unknown format."""
    try:
        export_format = ExportFormat(fmt)
    except ValueError:
        raise ValueError(f"Invalid export format: {fmt!r}") from None

    if export_format is ExportFormat.CSV:
        content = generate_csv_export(columns, rows)
    elif export_format is ExportFormat.JSON:
        content = generate_json_export(rows)
    else:
        content = generate_sql_export(table, columns, rows)

    return ExportFile(
        content=content,
        media_type=MEDIA_TYPES[export_format],
        filename=f"{table}.{export_format.value}",
    )
