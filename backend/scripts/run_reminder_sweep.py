from sqlmodel import Session

from app.core.logging_setup import configure_logging
from app.db.session import engine, init_db
from app.services.reminders import run_reminder_sweep

configure_logging()
init_db()

with Session(engine) as s:
    report = run_reminder_sweep(s)
    print(
        f"Reminders: {report.reminders_sent} | Expired: {len(report.expired)} | "
        f"Completed: {len(report.completed)} | Failed: {len(report.failed)}"
    )
