import threading
import time
import unittest
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from expiring_invoice.emailer import EXPIRY_SUBJECT, DeliveryResult
from expiring_invoice.store import Invoice, InvoiceStore
from expiring_invoice.sweep import (
    SWEEP_JOB_ID,
    SweepReport,
    process_expired_invoices,
    run_periodically,
    schedule_sweeps,
)

NOW = 1_000_000


def make_invoice(invoice_id: str, expiry: int, **overrides) -> Invoice:
    fields = dict(
        id=invoice_id,
        client_name="Acme Corp",
        client_email="cto@acme.com",
        amount=8625.0,
        currency="USD",
        expiry_timestamp=expiry,
        page_url=f"/invoice/{invoice_id}/",
        calendly_link="https://calendly.com/you/30min",
    )
    fields.update(overrides)
    return Invoice(**fields)


class FakeEmailer:
    def __init__(self, fail_for=(), raise_for=()) -> None:
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.sent = []

    def send(self, to: str, subject: str, html_body: str) -> DeliveryResult:
        if to in self.raise_for:
            raise ConnectionError("network down")
        if to in self.fail_for:
            return DeliveryResult(False, "Resend error: 422 invalid recipient")
        self.sent.append((to, subject, html_body))
        return DeliveryResult(True, message_id=f"msg-{len(self.sent)}")


class BrokenMarkStore:
    def __init__(self, store: InvoiceStore) -> None:
        self.store = store

    def select_expired_unnotified(self, now_ms: int):
        return self.store.select_expired_unnotified(now_ms)

    def mark_notified(self, invoice_id: str, sent_at: str) -> bool:
        raise RuntimeError("database is locked")


class SweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InvoiceStore(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def sweep(self, emailer, store=None):
        return process_expired_invoices(
            store or self.store, emailer, now=NOW, timestamp=lambda: "2026-01-01T00:00:00Z"
        )

    def test_selects_only_expired_unnotified_invoices(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 1, client_email="a@example.com"))
        self.store.insert(make_invoice("B", expiry=NOW + 1, client_email="b@example.com"))
        self.store.insert(make_invoice("C", expiry=NOW - 1, client_email="c@example.com"))
        self.store.mark_notified("C", "2025-12-31T00:00:00Z")
        emailer = FakeEmailer()

        report = self.sweep(emailer)

        self.assertEqual(report.selected, 1)
        self.assertEqual(report.sent, ["A"])
        self.assertEqual([to for to, _, _ in emailer.sent], ["a@example.com"])
        self.assertEqual(emailer.sent[0][1], EXPIRY_SUBJECT)
        b = self.store.get("B")
        c = self.store.get("C")
        assert b is not None and c is not None
        self.assertFalse(b.email_sent)
        self.assertEqual(c.email_sent_at, "2025-12-31T00:00:00Z")

    def test_second_sweep_sends_nothing(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 1))
        emailer = FakeEmailer()

        self.sweep(emailer)
        report = self.sweep(emailer)

        self.assertEqual(len(emailer.sent), 1)
        self.assertEqual(report.selected, 0)
        invoice = self.store.get("A")
        assert invoice is not None
        self.assertTrue(invoice.email_sent)
        self.assertEqual(invoice.email_sent_at, "2026-01-01T00:00:00Z")

    def test_failed_delivery_does_not_block_others(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 2, client_email="a@example.com"))
        self.store.insert(make_invoice("D", expiry=NOW - 1, client_email="d@example.com"))
        emailer = FakeEmailer(fail_for={"a@example.com"})

        with self.assertLogs("expiring_invoice.sweep", level="ERROR"):
            report = self.sweep(emailer)

        self.assertEqual(report.failed, ["A"])
        self.assertEqual(report.sent, ["D"])
        a = self.store.get("A")
        d = self.store.get("D")
        assert a is not None and d is not None
        self.assertFalse(a.email_sent)
        self.assertTrue(d.email_sent)

    def test_failed_invoice_is_retried_on_next_sweep(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 1, client_email="a@example.com"))

        with self.assertLogs("expiring_invoice.sweep", level="ERROR"):
            self.sweep(FakeEmailer(fail_for={"a@example.com"}))
        emailer = FakeEmailer()
        report = self.sweep(emailer)

        self.assertEqual(report.sent, ["A"])
        self.assertEqual(len(emailer.sent), 1)

    def test_exception_during_send_is_isolated(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 2, client_email="a@example.com"))
        self.store.insert(make_invoice("D", expiry=NOW - 1, client_email="d@example.com"))
        emailer = FakeEmailer(raise_for={"a@example.com"})

        with self.assertLogs("expiring_invoice.sweep", level="ERROR") as logs:
            report = self.sweep(emailer)

        self.assertEqual(report.failed, ["A"])
        self.assertEqual(report.sent, ["D"])
        self.assertTrue(any("invoice A" in line for line in logs.output))

    def test_flag_update_failure_is_logged_not_raised(self) -> None:
        self.store.insert(make_invoice("A", expiry=NOW - 1))
        emailer = FakeEmailer()

        with self.assertLogs("expiring_invoice.sweep", level="ERROR") as logs:
            report = self.sweep(emailer, store=BrokenMarkStore(self.store))

        self.assertEqual(report.unmarked, ["A"])
        self.assertEqual(len(emailer.sent), 1)
        self.assertTrue(any("duplicate" in line for line in logs.output))
        invoice = self.store.get("A")
        assert invoice is not None
        self.assertFalse(invoice.email_sent)


class ScheduledSweepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.scheduler = BackgroundScheduler()

    def tearDown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def test_sweep_job_is_single_instance_and_coalesced(self) -> None:
        job = schedule_sweeps(self.scheduler, SweepReport, 300, run_now=False)

        self.assertEqual(job.id, SWEEP_JOB_ID)
        self.assertEqual(job.max_instances, 1)
        self.assertTrue(job.coalesce)
        self.assertEqual(job.trigger.interval, timedelta(seconds=300))

    def test_first_sweep_runs_immediately_and_stays_scheduled_after_failure(self) -> None:
        done = threading.Event()
        calls = []

        def sweep():
            calls.append(1)
            done.set()
            raise RuntimeError("store unavailable")

        with self.assertLogs("expiring_invoice.sweep", level="ERROR"):
            run_periodically(sweep, 300, scheduler=self.scheduler)
            self.assertTrue(done.wait(5))
            time.sleep(0.1)

        self.assertEqual(calls, [1])
        self.assertIsNotNone(self.scheduler.get_job(SWEEP_JOB_ID))


if __name__ == "__main__":
    unittest.main()
