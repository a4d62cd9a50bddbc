import unittest
from unittest.mock import MagicMock

from expiring_invoice.emailer import EXPIRY_SUBJECT, RESEND_URL, ResendEmailer, render_expiry_email
from expiring_invoice.store import Invoice


def make_invoice(**overrides) -> Invoice:
    fields = dict(
        id="inv-1",
        client_name="Acme Corp",
        client_email="cto@acme.com",
        amount=8625.0,
        currency="USD",
        expiry_timestamp=1000,
        page_url="/invoice/inv-1/",
        calendly_link="https://calendly.com/you/30min",
    )
    fields.update(overrides)
    return Invoice(**fields)


def fake_response(status: int, body=None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body or {}
    return response


class RenderExpiryEmailTests(unittest.TestCase):
    def test_mentions_client_amount_and_booking_link(self) -> None:
        subject, body = render_expiry_email(make_invoice())

        self.assertEqual(subject, EXPIRY_SUBJECT)
        self.assertIn("Hi Acme Corp,", body)
        self.assertIn("USD 8,625.00", body)
        self.assertIn('href="https://calendly.com/you/30min"', body)
        self.assertIn("Book a Call", body)

    def test_escapes_client_supplied_values(self) -> None:
        _, body = render_expiry_email(make_invoice(client_name="<script>x</script>"))

        self.assertNotIn("<script>", body)
        self.assertIn("&lt;script&gt;", body)


class ResendEmailerTests(unittest.TestCase):
    def test_successful_send_posts_to_resend(self) -> None:
        session = MagicMock()
        session.post.return_value = fake_response(200, {"id": "msg-1"})
        emailer = ResendEmailer("re_key", "invoices@example.com", timeout=5, session=session)

        result = emailer.send("cto@acme.com", "Subject", "<p>hi</p>")

        self.assertTrue(result.ok)
        self.assertEqual(result.message_id, "msg-1")
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], RESEND_URL)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer re_key")
        self.assertEqual(kwargs["json"]["to"], ["cto@acme.com"])
        self.assertEqual(kwargs["json"]["from"], "invoices@example.com")
        self.assertEqual(kwargs["timeout"], 5)

    def test_http_error_is_reported_not_raised(self) -> None:
        session = MagicMock()
        session.post.return_value = fake_response(422, text="invalid `to` field")
        emailer = ResendEmailer("re_key", "invoices@example.com", session=session)

        result = emailer.send("bad", "Subject", "<p>hi</p>")

        self.assertFalse(result.ok)
        self.assertIn("422", result.error or "")

    def test_non_json_success_body_still_counts_as_sent(self) -> None:
        session = MagicMock()
        session.post.return_value = fake_response(200, ValueError("no json"))
        emailer = ResendEmailer("re_key", "invoices@example.com", session=session)

        result = emailer.send("cto@acme.com", "Subject", "<p>hi</p>")

        self.assertTrue(result.ok)
        self.assertIsNone(result.message_id)

    def test_non_object_json_success_body_still_counts_as_sent(self) -> None:
        session = MagicMock()
        session.post.return_value = fake_response(200, ["queued"])
        emailer = ResendEmailer("re_key", "invoices@example.com", session=session)

        result = emailer.send("cto@acme.com", "Subject", "<p>hi</p>")

        self.assertTrue(result.ok)
        self.assertIsNone(result.message_id)

    def test_missing_api_key_fails_without_network(self) -> None:
        session = MagicMock()
        emailer = ResendEmailer("", "invoices@example.com", session=session)

        result = emailer.send("cto@acme.com", "Subject", "<p>hi</p>")

        self.assertFalse(result.ok)
        session.post.assert_not_called()

    def test_transport_errors_propagate(self) -> None:
        session = MagicMock()
        session.post.side_effect = ConnectionError("reset")
        emailer = ResendEmailer("re_key", "invoices@example.com", session=session)

        with self.assertRaises(ConnectionError):
            emailer.send("cto@acme.com", "Subject", "<p>hi</p>")


if __name__ == "__main__":
    unittest.main()
