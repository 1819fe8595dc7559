"""Erzeugt fällige Rechnungen aus wiederkehrenden Plänen."""

from __future__ import annotations

from datetime import date
import logging
from typing import Optional

from pydantic import BaseModel

from konsul.dispatcher import CommandDispatcher
from konsul.errors import NotFoundError
from konsul.models import DocumentType, RecurringSchedule
from konsul.repository import Repository
from konsul.schedule import advance, should_deactivate

logger = logging.getLogger(__name__)

AUTO_NOTE = "Generada automáticamente desde factura recurrente"


class ScheduleError(BaseModel):
    schedule_id: str
    error: str


class RecurringRunResult(BaseModel):
    generated: list[str] = []
    errors: list[ScheduleError] = []


def _notes_for(schedule: RecurringSchedule) -> str:
    if schedule.notes:
        return f"{schedule.notes}\n\n(Generada automáticamente)"
    return AUTO_NOTE


def run_schedule(
    schedule: RecurringSchedule,
    repository: Repository,
    dispatcher: CommandDispatcher,
    today: date,
) -> str:
    """Legt die Rechnung eines Plans an und schreibt den Plan fort."""
    client = repository.get_client(schedule.tenant_id, schedule.client_id)
    if client is None:
        raise NotFoundError(f"client {schedule.client_id} not found")
    created = dispatcher.create_for_client(
        schedule.tenant_id,
        DocumentType.INVOICE,
        client,
        schedule.title,
        schedule.items,
        currency=schedule.currency,
        tax_rate=schedule.tax_rate,
        issue_date=today,
        due_in_days=schedule.due_in_days,
        notes=_notes_for(schedule),
    )
    next_run = advance(schedule)
    repository.save_schedule(
        schedule.model_copy(
            update={
                "last_run_date": today,
                "next_run_date": next_run,
                "is_active": not should_deactivate(schedule, next_run),
            }
        )
    )
    return created.id


def generate_recurring_invoices(
    repository: Repository,
    dispatcher: CommandDispatcher,
    today: Optional[date] = None,
) -> RecurringRunResult:
    """Verarbeitet alle fälligen Pläne; Fehler werden je Plan gesammelt."""
    today = today or date.today()
    result = RecurringRunResult()
    schedules = repository.due_schedules(today)
    logger.info("Found %d recurring invoices to generate", len(schedules))
    for schedule in schedules:
        try:
            invoice_id = run_schedule(schedule, repository, dispatcher, today)
        except Exception as exc:
            logger.exception("Error generating invoice for recurring %s", schedule.id)
            result.errors.append(ScheduleError(schedule_id=schedule.id, error=str(exc)))
            continue
        result.generated.append(invoice_id)
        logger.info("Generated invoice %s from recurring %s", invoice_id, schedule.id)
    logger.info(
        "Recurring summary: %d generated, %d errors",
        len(result.generated),
        len(result.errors),
    )
    return result
