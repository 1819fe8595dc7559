"""Berechnung des nächsten Laufs wiederkehrender Rechnungen."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Optional

from konsul.models import Frequency, RecurringSchedule


def _add_months(start: date, months: int, anchor_day: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def _add_years(start: date, years: int) -> date:
    year = start.year + years
    # 29. Februar in Nicht-Schaltjahren
    last_day = calendar.monthrange(year, start.month)[1]
    return date(year, start.month, min(start.day, last_day))


def advance(schedule: RecurringSchedule, from_date: Optional[date] = None) -> date:
    """Gibt das Datum des nächsten Laufs nach ``from_date`` zurück.

    ``from_date`` ist standardmäßig ``schedule.next_run_date``. Monatliche
    Pläne springen auf ``day_of_month`` (bzw. den Tag des Startdatums) und
    kappen auf den letzten Tag des Zielmonats.
    """
    current = from_date or schedule.next_run_date
    interval = max(schedule.interval, 1)
    if schedule.frequency is Frequency.WEEKLY:
        return current + timedelta(days=7 * interval)
    if schedule.frequency is Frequency.YEARLY:
        return _add_years(current, interval)
    anchor = schedule.day_of_month or current.day
    return _add_months(current, interval, anchor)


def should_deactivate(schedule: RecurringSchedule, next_date: date) -> bool:
    """Ein Plan endet, sobald der nächste Lauf hinter ``end_date`` liegt."""
    return schedule.end_date is not None and next_date > schedule.end_date
