from decimal import Decimal

from django.core import mail
from django.test import TestCase, override_settings
from django.utils import timezone

from accounts.models import User
from fees.models import UnrecordedPayment
from .tasks import notify_unrecorded_payment


@override_settings(ADMINS=[("Bursar", "bursar@example.com")], SITE_URL="https://fees.example")
class NotifyUnrecordedPaymentTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username="ada", role="student", external_user_id="7")
        self.record = UnrecordedPayment.objects.create(
            user=self.user,
            student_id=42,
            gateway_transaction_id="123",
            tx_ref="school_fee_1_1",
            amount=Decimal("20000.00"),
            total_amount=Decimal("50000.00"),
            currency="NGN",
            term="first",
            academic_year_id=3,
            fee_structure_id=1,
            error="Server error",
        )

    def test_emails_admins(self):
        notify_unrecorded_payment(self.record.id)
        self.assertEqual(len(mail.outbox), 1)
        msg = mail.outbox[0]
        self.assertEqual(msg.to, ["bursar@example.com"])
        self.assertIn("123", msg.subject)
        self.assertIn("school_fee_1_1", msg.body)
        self.assertIn("20000.00 NGN", msg.body)
        self.assertIn(f"https://fees.example/admin/fees/unrecordedpayment/{self.record.id}/change/", msg.body)
        self.record.refresh_from_db()
        self.assertIsNotNone(self.record.notified_at)

    def test_notified_once(self):
        self.record.notified_at = timezone.now()
        self.record.save()
        notify_unrecorded_payment(self.record.id)
        self.assertEqual(mail.outbox, [])

    def test_resolved_is_skipped(self):
        self.record.resolved = True
        self.record.save()
        notify_unrecorded_payment(self.record.id)
        self.assertEqual(mail.outbox, [])

    @override_settings(ADMINS=[])
    def test_no_admins(self):
        with self.assertLogs("jobs.tasks", level="WARNING"):
            notify_unrecorded_payment(self.record.id)
        self.assertEqual(mail.outbox, [])
        self.record.refresh_from_db()
        self.assertIsNone(self.record.notified_at)
