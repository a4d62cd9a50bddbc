"""Periodic sweep that emails clients once their invoice has expired.

Each expired, unnotified invoice gets one delivery attempt per sweep. The
``email_sent`` flag is flipped only after the provider accepted the message,
so a failed invoice stays eligible for the next run. A crash between a
successful send and the flag update can cause one duplicate email on the next
sweep; that window is logged, not closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from apscheduler.job import Job
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler

from .emailer import DeliveryResult, render_expiry_email
from .formatting import iso_now, now_ms
from .store import Invoice

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "expiry-sweep"


class InvoiceSource(Protocol):
    def select_expired_unnotified(self, now_ms: int) -> List[Invoice]:
        ...

    def mark_notified(self, invoice_id: str, sent_at: str) -> bool:
        ...


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> DeliveryResult:
        ...


@dataclass
class SweepReport:
    selected: int = 0
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    unmarked: List[str] = field(default_factory=list)


def process_expired_invoices(
    store: InvoiceSource,
    emailer: EmailSender,
    now: Optional[int] = None,
    timestamp: Callable[[], str] = iso_now,
) -> SweepReport:
    now = now_ms() if now is None else now
    invoices = store.select_expired_unnotified(now)
    report = SweepReport(selected=len(invoices))

    for invoice in invoices:
        try:
            subject, body = render_expiry_email(invoice)
            result = emailer.send(invoice.client_email, subject, body)
        except Exception:
            logger.exception("Error sending expiry email for invoice %s", invoice.id)
            report.failed.append(invoice.id)
            continue

        if not result.ok:
            logger.error("Failed to send email for invoice %s: %s", invoice.id, result.error)
            report.failed.append(invoice.id)
            continue

        try:
            marked = store.mark_notified(invoice.id, timestamp())
        except Exception:
            logger.exception(
                "Email sent for invoice %s but marking it notified failed; "
                "the next sweep may send a duplicate",
                invoice.id,
            )
            report.unmarked.append(invoice.id)
            continue

        if marked:
            logger.info("Email sent for invoice %s", invoice.id)
            report.sent.append(invoice.id)
        else:
            logger.error(
                "Email sent for invoice %s but the notified flag was not updated; "
                "the row was missing or already marked",
                invoice.id,
            )
            report.unmarked.append(invoice.id)

    logger.info(
        "Processed %d expired invoices (%d sent, %d failed, %d unmarked)",
        report.selected,
        len(report.sent),
        len(report.failed),
        len(report.unmarked),
    )
    return report


def _guarded(sweep: Callable[[], SweepReport]) -> Callable[[], None]:
    def job() -> None:
        try:
            sweep()
        except Exception:
            logger.exception("Expiry sweep aborted")

    return job


def schedule_sweeps(
    scheduler: BaseScheduler,
    sweep: Callable[[], SweepReport],
    interval_seconds: float,
    *,
    run_now: bool = True,
) -> Job:
    """Register ``sweep`` as a single-instance interval job on ``scheduler``."""
    options = {}
    if run_now:
        options["next_run_time"] = datetime.now()
    return scheduler.add_job(
        _guarded(sweep),
        "interval",
        seconds=interval_seconds,
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
        **options,
    )


def run_periodically(
    sweep: Callable[[], SweepReport],
    interval_seconds: float,
    scheduler: Optional[BaseScheduler] = None,
) -> None:
    """Sweep now and then every interval; blocks until interrupted."""
    scheduler = scheduler or BlockingScheduler()
    schedule_sweeps(scheduler, sweep, interval_seconds)
    logger.info("Expiry sweep scheduled every %ss", interval_seconds)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Expiry sweep stopped")
