import csv
import io

from backend.app.services.error_report import ERROR_REPORT_COLUMNS, build_error_report_csv


def _read(content):
    return list(csv.reader(io.StringIO(content.decode("utf-8-sig"))))


def test_report_lines_follow_entries():
    lines = _read(build_error_report_csv([
        {"row": 2, "code": "INVALID_FORMAT", "field": "email", "message": "Invalid email", "values": {"email": "x"}},
        {"row": 5, "code": "PROCESSING_ERROR", "field": None, "message": "Failed to save row: boom"},
    ]))

    assert lines[0] == ERROR_REPORT_COLUMNS
    assert lines[1] == ["2", "INVALID_FORMAT", "email", "Invalid email", '{"email": "x"}']
    assert lines[2] == ["5", "PROCESSING_ERROR", "", "Failed to save row: boom", "{}"]


def test_uploaded_text_cannot_become_a_formula():
    lines = _read(build_error_report_csv([
        {"row": 1, "code": "NOT_FOUND", "field": "batch", "message": "=HYPERLINK(\"http://evil\")"},
        {"row": 2, "code": "NOT_FOUND", "field": "@name", "message": "+1+1"},
        {"row": 3, "code": "NOT_FOUND", "field": "batch", "message": "-2+3"},
    ]))

    assert lines[1][3] == "'=HYPERLINK(\"http://evil\")"
    assert lines[2][2:4] == ["'@name", "'+1+1"]
    assert lines[3][3] == "'-2+3"
    assert lines[1][0] == "1"
