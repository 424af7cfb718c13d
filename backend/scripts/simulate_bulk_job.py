# backend/scripts/simulate_bulk_job.py
"""
Run this script to simulate:
- create an institution and a batch
- parse a small student CSV (one bad row)
- create a QUEUED BulkJob holding the rows
- run the worker function process_job synchronously

Progress events are published to Redis when it is reachable and dropped otherwise.
"""
import uuid

from backend.app.db import SessionLocal, init_db
from backend.app.models.academic import Batch
from backend.app.models.enums import JobType, Role
from backend.app.models.institution import Institution
from backend.app.services import bulk_job_service
from backend.app.services.bulk_processor import process_job
from backend.app.services.bulk_validation import TenantContext
from backend.app.services.row_parser import parse_rows


def main():
    init_db()
    db = SessionLocal()
    try:
        suffix = uuid.uuid4().hex[:6].upper()

        institution = Institution(name=f"Simulation Polytechnic {suffix}", code=f"SIM-{suffix}", type="POLYTECHNIC")
        db.add(institution); db.commit(); db.refresh(institution)

        batch = Batch(name="2024-27", institution_id=institution.id)
        db.add(batch); db.commit()

        csv_content = (
            "Name,Email,Enrollment Number,Batch\n"
            f"Asha,asha.{suffix.lower()}@example.com,SIM{suffix}1,2024-27\n"
            f"Ravi,invalid,SIM{suffix}2,2024-27\n"
            f"Meera,meera.{suffix.lower()}@example.com,SIM{suffix}3,2024-27\n"
        )
        rows = parse_rows(csv_content.encode("utf-8"), "simulation.csv", JobType.STUDENTS)

        ctx = TenantContext(uploader_id=1, uploader_role=Role.STATE_DIRECTORATE, institution_id=institution.id)
        job = bulk_job_service.create_job(
            db, job_type=JobType.STUDENTS, rows=rows, ctx=ctx,
            file_name="simulation.csv", file_size=len(csv_content),
        )

        # run worker synchronously
        print("Running worker sync for job:", job.job_id)
        result = process_job(db, job.job_id)
        print("done:", result)
        for entry in job.error_report:
            print("  row", entry["row"], entry["code"], entry["message"])

    finally:
        db.close()


if __name__ == "__main__":
    main()
