# backend/app/services/error_report.py
import io
import csv
import json
from typing import Any, Dict, Iterable

ERROR_REPORT_COLUMNS = ["row", "code", "field", "message", "values"]

# leading characters spreadsheet apps evaluate as a formula
FORMULA_PREFIXES = ("=", "+", "-", "@")


def _cell(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def build_error_report_csv(entries: Iterable[Dict[str, Any]]) -> bytes:
    """CSV rendering of a job's errorReport, one line per failed row."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(ERROR_REPORT_COLUMNS)
    for entry in entries:
        writer.writerow([_cell(v) for v in (
            entry.get("row"),
            entry.get("code"),
            entry.get("field") or "",
            entry.get("message"),
            json.dumps(entry.get("values") or {}, default=str),
        )])
    # BOM so spreadsheet apps pick utf-8
    return buf.getvalue().encode("utf-8-sig")
