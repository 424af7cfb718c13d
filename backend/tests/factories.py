"""Row, file and token builders shared by the test modules."""
import csv
import io

from backend.app.services.row_parser import RawRow
from backend.app.utils.security import token_for

STUDENT_HEADERS = ["Name", "Email", "Phone", "Enrollment Number", "Batch", "Branch"]


class FakePublisher:
    def __init__(self, job_id, user_id=None):
        self.job_id = job_id
        self.user_id = user_id
        self.events = []

    def progress(self, processed, total, success, failed, force=False):
        self.events.append(("progress", processed, total))
        return True

    def completed(self, job):
        self.events.append(("completed", job.job_id))
        return True

    def failed(self, job, error):
        self.events.append(("failed", error))
        return True

    def cancelled(self, job):
        self.events.append(("cancelled", job.job_id))
        return True


def student_values(i, **overrides):
    values = {
        "name": f"Student {i}",
        "email": f"student{i}@example.com",
        "phone": "98765" + str(i).zfill(5),
        "enrollment_number": f"EN{i:04d}",
        "batch": "2024-27",
        "branch": "Computer Engineering",
    }
    values.update(overrides)
    return values


def student_rows(count, start=1, **overrides):
    return [RawRow(index=i, values=student_values(i, **overrides)) for i in range(start, start + count)]


def csv_file(headers, rows):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")


def student_csv(count, bad_rows=()):
    rows = []
    for i in range(1, count + 1):
        v = student_values(i)
        if i in bad_rows:
            v["email"] = "not-an-email"
        rows.append([v["name"], v["email"], v["phone"], v["enrollment_number"], v["batch"], v["branch"]])
    return csv_file(STUDENT_HEADERS, rows)


def auth(user_id, role, institution_id=None):
    return {"Authorization": f"Bearer {token_for(user_id, role, institution_id)}"}
