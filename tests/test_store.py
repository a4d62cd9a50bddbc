import unittest

from expiring_invoice.store import DuplicateInvoiceError, Invoice, InvoiceStore


def make_invoice(invoice_id: str = "inv-1", expiry: int = 1000, **overrides) -> Invoice:
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


class InvoiceStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InvoiceStore(":memory:")

    def tearDown(self) -> None:
        self.store.close()

    def test_insert_and_get_round_trip_keeps_extras(self) -> None:
        self.store.insert(make_invoice(payload={"notes": "Net 7"}))

        invoice = self.store.get("inv-1")

        assert invoice is not None
        self.assertEqual(invoice.client_email, "cto@acme.com")
        self.assertFalse(invoice.email_sent)
        self.assertIsNone(invoice.email_sent_at)
        self.assertEqual(invoice.payload, {"notes": "Net 7"})

    def test_get_unknown_returns_none(self) -> None:
        self.assertIsNone(self.store.get("missing"))

    def test_duplicate_id_is_rejected(self) -> None:
        self.store.insert(make_invoice())
        with self.assertRaises(DuplicateInvoiceError):
            self.store.insert(make_invoice())

    def test_select_only_expired_and_unnotified(self) -> None:
        self.store.insert(make_invoice("a", expiry=100))
        self.store.insert(make_invoice("b", expiry=10_000))
        self.store.insert(make_invoice("c", expiry=100))
        self.store.insert(make_invoice("edge", expiry=500))
        self.store.mark_notified("c", "2026-01-01T00:00:00Z")

        selected = [invoice.id for invoice in self.store.select_expired_unnotified(500)]

        self.assertEqual(selected, ["a"])

    def test_mark_notified_flips_once(self) -> None:
        self.store.insert(make_invoice())

        self.assertTrue(self.store.mark_notified("inv-1", "2026-01-01T00:00:00Z"))
        self.assertFalse(self.store.mark_notified("inv-1", "2026-01-02T00:00:00Z"))

        invoice = self.store.get("inv-1")
        assert invoice is not None
        self.assertTrue(invoice.email_sent)
        self.assertEqual(invoice.email_sent_at, "2026-01-01T00:00:00Z")

    def test_mark_notified_unknown_id_fails(self) -> None:
        self.assertFalse(self.store.mark_notified("missing", "2026-01-01T00:00:00Z"))


if __name__ == "__main__":
    unittest.main()
