import time
from datetime import date
from decimal import Decimal
from unittest import mock

import requests
from django.contrib.auth.backends import ModelBackend
from django.core.cache import cache
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from accounts.models import User
from accounts.session import ApiSession
from backend_api.client import BackendAuthError, BackendError
from .forms import PaymentForm
from .gateway import GatewayError, GatewayUnavailable, verify_transaction
from .models import UnrecordedPayment
from .reconciliation import (
    PaymentRejected,
    collection_overview,
    compute_balance,
    find_fee_structure,
    payment_summary,
    resolve_grade,
    results_visible,
    submit_block_reason,
    term_status_grid,
    validate_payment,
)
from .services import MAX_PENDING_CHECKOUTS, PENDING_CHECKOUTS_KEY

MODEL_BACKEND = f"{ModelBackend.__module__}.{ModelBackend.__name__}"

STUDENT = {"id": 42, "student_number": "STU042", "current_class": "Grade 10 A", "academic_year_id": 3, "name": "Ada Obi"}
TUITION_10 = {"id": 1, "academic_year_id": 3, "grade": 10, "fee_type": "tuition", "amount": Decimal("50000")}


def payment(amount, status="partial", term="first", year=3, student=42, **extra):
    row = {
        "id": extra.pop("id", None),
        "student_id": student,
        "academic_year_id": year,
        "term": term,
        "amount_paid": Decimal(amount),
        "total_amount": Decimal("50000"),
        "status": status,
        "due_date": None,
        "payment_method": "",
    }
    row.update(extra)
    return row


class GradeResolutionTests(SimpleTestCase):
    def test_grade_keyword(self):
        for label, grade in (("Grade 10 A", 10), ("Grade 1", 1), ("Grade 12 Science", 12)):
            self.assertEqual(resolve_grade(label), grade)

    def test_leading_number(self):
        self.assertEqual(resolve_grade("10A"), 10)

    def test_any_number(self):
        self.assertEqual(resolve_grade("Year 7 Blue"), 7)
        self.assertEqual(resolve_grade("SS2"), 2)

    def test_no_digits_is_unresolvable(self):
        for label in ("SS two", "Nursery", "", None):
            self.assertIsNone(resolve_grade(label))


class FeeStructureLookupTests(SimpleTestCase):
    def test_match(self):
        self.assertEqual(find_fee_structure([TUITION_10], 10, 3), TUITION_10)

    def test_no_match_is_none(self):
        self.assertIsNone(find_fee_structure([TUITION_10], 11, 3))
        self.assertIsNone(find_fee_structure([TUITION_10], 10, 4))
        self.assertIsNone(find_fee_structure([TUITION_10], 10, 3, fee_type="transport"))
        self.assertIsNone(find_fee_structure([TUITION_10], None, 3))

    def test_duplicate_first_wins(self):
        dup = {**TUITION_10, "id": 2, "amount": Decimal("60000")}
        with self.assertLogs("fees.reconciliation", level="WARNING"):
            found = find_fee_structure([TUITION_10, dup], 10, 3)
        self.assertEqual(found["id"], 1)


class BalanceTests(SimpleTestCase):
    def test_no_prior_payment(self):
        balance = compute_balance(STUDENT, [TUITION_10], [], "first", 3)
        self.assertEqual(balance["full_fee"], Decimal("50000"))
        self.assertEqual(balance["already_paid"], Decimal("0"))
        self.assertEqual(balance["remaining"], Decimal("50000"))
        self.assertEqual(balance["session_pending"], Decimal("150000"))
        self.assertFalse(balance["is_fully_paid"])

    def test_part_payments_accumulate(self):
        txs = [payment("20000"), payment("10000"), payment("5000", term="second")]
        balance = compute_balance(STUDENT, [TUITION_10], txs, "first", 3)
        self.assertEqual(balance["already_paid"], Decimal("30000"))
        self.assertEqual(balance["remaining"], Decimal("20000"))
        self.assertEqual(balance["session_pending"], Decimal("115000"))

    def test_other_students_and_years_ignored(self):
        txs = [payment("20000", student=43), payment("20000", year=2)]
        balance = compute_balance(STUDENT, [TUITION_10], txs, "first", 3)
        self.assertEqual(balance["remaining"], Decimal("50000"))

    def test_remaining_never_negative(self):
        txs = [payment("30000"), payment("30000")]
        balance = compute_balance(STUDENT, [TUITION_10], txs, "first", 3)
        self.assertEqual(balance["remaining"], Decimal("0"))

    def test_unresolved_fee_is_none(self):
        profile = {**STUDENT, "current_class": "SS two"}
        balance = compute_balance(profile, [TUITION_10], [payment("1000")], "first", 3)
        self.assertIsNone(balance["grade"])
        self.assertIsNone(balance["full_fee"])
        self.assertIsNone(balance["remaining"])
        self.assertIsNone(balance["session_pending"])
        self.assertEqual(balance["already_paid"], Decimal("1000"))

    def test_idempotent(self):
        txs = [payment("20000")]
        self.assertEqual(
            compute_balance(STUDENT, [TUITION_10], txs, "first", 3),
            compute_balance(STUDENT, [TUITION_10], txs, "first", 3),
        )

    def test_paid_status_marks_term_paid(self):
        balance = compute_balance(STUDENT, [TUITION_10], [payment("50000", status="paid")], "first", 3)
        self.assertTrue(balance["is_fully_paid"])


class PaymentValidationTests(SimpleTestCase):
    def balance(self, txs=()):
        return compute_balance(STUDENT, [TUITION_10], list(txs), "first", 3)

    def assertRejected(self, code, balance, amount):
        with self.assertRaises(PaymentRejected) as cm:
            validate_payment(balance, amount)
        self.assertEqual(cm.exception.code, code)

    def test_part_payment_accepted(self):
        balance = self.balance()
        self.assertEqual(validate_payment(balance, "20000"), Decimal("20000"))
        after = self.balance([payment("20000")])
        self.assertEqual(after["remaining"], Decimal("30000"))
        self.assertRejected(PaymentRejected.EXCEEDS_BALANCE, after, "30001")
        self.assertEqual(validate_payment(after, "30000"), Decimal("30000"))

    def test_blank_amount_pays_remaining(self):
        self.assertEqual(validate_payment(self.balance([payment("20000")])), Decimal("30000"))
        self.assertEqual(validate_payment(self.balance(), ""), Decimal("50000"))

    def test_non_positive(self):
        balance = self.balance()
        for amount in ("0", "-5", Decimal("0"), "abc", "NaN"):
            self.assertRejected(PaymentRejected.NON_POSITIVE, balance, amount)

    def test_over_remaining_by_one(self):
        self.assertRejected(PaymentRejected.EXCEEDS_BALANCE, self.balance(), "50001")

    def test_already_paid_rejects_any_amount(self):
        balance = self.balance([payment("50000", status="paid")])
        for amount in ("1", "50000", None):
            with self.assertRaises(PaymentRejected) as cm:
                validate_payment(balance, amount)
            self.assertEqual(cm.exception.code, PaymentRejected.ALREADY_PAID)
            self.assertIn("already been paid", cm.exception.message)

    def test_unknown_fee_blocks_submit(self):
        balance = compute_balance(STUDENT, [], [], "first", 3)
        self.assertEqual(submit_block_reason(balance).code, PaymentRejected.FEE_UNKNOWN)
        for amount in ("1", "100", None):
            self.assertRejected(PaymentRejected.FEE_UNKNOWN, balance, amount)


class GatingAndSummaryTests(SimpleTestCase):
    def test_results_visible_only_when_paid(self):
        self.assertFalse(results_visible([payment("20000")], 42, "first", 3))
        self.assertTrue(results_visible([payment("20000"), payment("30000", status="paid")], 42, "first", 3))
        self.assertFalse(results_visible([payment("50000", status="paid")], 42, "second", 3))

    def test_term_status_grid_latest_years_first(self):
        years = [{"id": 1, "name": "2022/23"}, {"id": 3, "name": "2024/25"}, {"id": 2, "name": "2023/24"}]
        grid = term_status_grid([payment("50000", status="paid", term="second")], years, 42, limit=2)
        self.assertEqual([row["academic_year"]["id"] for row in grid], [3, 2])
        self.assertEqual(
            [t["paid"] for t in grid[0]["terms"]], [False, True, False]
        )

    def test_payment_summary(self):
        txs = [
            payment("50000", status="paid"),
            payment("10000", status="overdue", term="second"),
            payment("0", status="pending", term="third", due_date=date(2025, 3, 31)),
            payment("0", status="pending", term="third", due_date=date(2025, 2, 28)),
        ]
        summary = payment_summary(txs)
        self.assertEqual(summary["total_paid"], Decimal("60000"))
        self.assertEqual(summary["total_overdue"], Decimal("40000"))
        self.assertEqual(summary["total_outstanding"], Decimal("90000"))
        self.assertEqual(summary["next_due_date"], date(2025, 2, 28))
        self.assertEqual(summary["next_due_date"], date(2025, 2, 28))

    def test_part_payments_counted_once_per_term(self):
        txs = [payment("20000"), payment("10000")]
        summary = payment_summary(txs)
        balance = compute_balance(STUDENT, [TUITION_10], txs, "first", 3)
        self.assertEqual(summary["total_outstanding"], Decimal("20000"))
        self.assertEqual(summary["total_outstanding"], balance["remaining"])

    def test_overdue_uses_cumulative_payments(self):
        txs = [payment("20000", status="overdue"), payment("10000"), payment("5000", student=43, status="overdue")]
        summary = payment_summary(txs)
        self.assertEqual(summary["total_overdue"], Decimal("65000"))
        overview = collection_overview({"total_revenue": Decimal("35000")}, txs)
        self.assertEqual(overview["overdue_amount"], Decimal("65000"))

    def test_collection_overview(self):
        stats = {"total_revenue": Decimal("75000"), "pending_fees": Decimal("25000")}
        txs = [
            payment("50000", status="paid", payment_method="flutterwave"),
            payment("25000", status="overdue", term="second"),
        ]
        overview = collection_overview(stats, txs)
        self.assertEqual(overview["collection_rate"], 75)
        self.assertEqual(overview["status_counts"]["paid"], 1)
        self.assertEqual(overview["status_counts"]["overdue"], 1)
        self.assertEqual(overview["overdue_amount"], Decimal("25000"))
        methods = {m["method"]: m for m in overview["payment_methods"]}
        self.assertEqual(methods["Cash"]["amount"], Decimal("25000"))
        self.assertEqual(methods["flutterwave"]["share"], Decimal("66.7"))

    def test_collection_overview_without_revenue(self):
        overview = collection_overview({}, [])
        self.assertEqual(overview["collection_rate"], 0)
        self.assertEqual(overview["payment_methods"], [])


STUDENT_USER = {
    "id": 7,
    "username": "ada",
    "role": "student",
    "first_name": "Ada",
    "last_name": "Obi",
    "profile": {"id": 42, "student_id": "STU042", "current_class_name": "Grade 10 A"},
}
RAW_STRUCTURES = [{"id": 1, "academic_year": 3, "grade": 10, "fee_type": "tuition", "amount": "50000.00"}]
RAW_YEARS = [{"id": 2, "name": "2023/2024"}, {"id": 3, "name": "2024/2025"}]


def raw_payment(amount, status="partial", term="first", **extra):
    row = {
        "id": 5,
        "student": 42,
        "fee_structure": 1,
        "academic_year": 3,
        "term": term,
        "amount_paid": amount,
        "total_amount": "50000.00",
        "status": status,
        "payment_date": "2024-10-01",
        "due_date": "2024-10-31",
        "payment_method": "flutterwave",
        "transaction_id": "99",
    }
    row.update(extra)
    return row


class PortalTestCase(TestCase):
    backend_user = STUDENT_USER
    role = "student"

    def setUp(self):
        cache.clear()
        self.user = User.objects.create(
            username="ada", email="ada@example.com", role=self.role, external_user_id="7", phone="0800"
        )
        self.client.force_login(self.user, backend=MODEL_BACKEND)
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "token"
        session[ApiSession.USER_KEY] = self.backend_user
        session.save()
        self.routes = {
            "fee-structures/": RAW_STRUCTURES,
            "academic-years/": RAW_YEARS,
            "fee-payments/": [],
        }
        patcher = mock.patch("backend_api.service.api_get", side_effect=self.fake_get)
        self.api_get = patcher.start()
        self.addCleanup(patcher.stop)

    def fake_get(self, path, token=None, params=None):
        result = self.routes[path]
        if isinstance(result, Exception):
            raise result
        return result

    def set_pending(self, tx_ref="school_fee_1_1", **overrides):
        checkout = {
            "created_at": int(time.time()),
            "student_id": 42,
            "fee_structure_id": 1,
            "academic_year_id": 3,
            "term": "first",
            "amount": "20000",
            "total_amount": "50000",
            "remarks": "",
        }
        checkout.update(overrides)
        session = self.client.session
        session[PENDING_CHECKOUTS_KEY] = {tx_ref: checkout}
        session.save()
        return tx_ref


class FeesPageTests(PortalTestCase):
    def test_index_lists_payments(self):
        self.routes["fee-payments/"] = [
            raw_payment("50000.00", status="paid"),
            raw_payment("0.00", status="pending", term="second", id=6),
        ]
        response = self.client.get(reverse("fees:index"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.context["summary"]["total_paid"], Decimal("50000.00"))
        self.assertEqual(set(response.context["groups"]), {"first", "second"})
        self.assertTrue(response.context["grid"][0]["terms"][0]["paid"])

    def test_index_filters_by_term(self):
        self.routes["fee-payments/"] = [
            raw_payment("50000.00", status="paid"),
            raw_payment("100.00", term="second", id=6),
        ]
        response = self.client.get(reverse("fees:index"), {"term": "second"})
        self.assertEqual(list(response.context["groups"]), ["second"])
        self.assertEqual(response.context["summary"]["total_paid"], Decimal("100.00"))

    def test_backend_failure_shows_message(self):
        self.routes["fee-payments/"] = BackendError("Server error", status_code=500)
        response = self.client.get(reverse("fees:index"))
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Server error")


class PayViewTests(PortalTestCase):
    def test_get_shows_balance(self):
        self.routes["fee-payments/"] = [raw_payment("20000.00")]
        response = self.client.get(reverse("fees:pay"), {"term": "first", "academic_year": 3})
        self.assertTrue(response.context["can_submit"])
        self.assertEqual(response.context["balance"]["remaining"], Decimal("30000.00"))

    def test_missing_fee_structure_disables_submit(self):
        self.routes["fee-structures/"] = []
        response = self.client.get(reverse("fees:pay"))
        self.assertFalse(response.context["can_submit"])
        self.assertIsNone(response.context["balance"]["full_fee"])
        self.assertContains(response, "—")
        with mock.patch("fees.gateway.create_checkout") as create:
            response = self.client.post(
                reverse("fees:pay"), {"term": "first", "academic_year": 3, "amount": "100"}
            )
        create.assert_not_called()
        self.assertFalse(response.context["can_submit"])

    def test_unresolvable_class_shows_placeholder(self):
        session = self.client.session
        session[ApiSession.USER_KEY] = {
            **STUDENT_USER,
            "profile": {**STUDENT_USER["profile"], "current_class_name": "SS two"},
        }
        session.save()
        response = self.client.get(reverse("fees:pay"))
        self.assertIsNone(response.context["balance"]["grade"])
        self.assertContains(response, "—")
        self.assertFalse(response.context["can_submit"])

    def test_class_without_matching_structure(self):
        session = self.client.session
        session[ApiSession.USER_KEY] = {
            **STUDENT_USER,
            "profile": {**STUDENT_USER["profile"], "current_class_name": "SS2"},
        }
        session.save()
        response = self.client.get(reverse("fees:pay"))
        self.assertEqual(response.context["balance"]["grade"], 2)
        self.assertIsNone(response.context["balance"]["full_fee"])
        self.assertFalse(response.context["can_submit"])

    @mock.patch("fees.gateway.create_checkout", return_value="https://checkout.example/pay/abc")
    def test_post_redirects_to_checkout(self, create):
        response = self.client.post(
            reverse("fees:pay"), {"term": "first", "academic_year": 3, "amount": "20000"}
        )
        self.assertRedirects(response, "https://checkout.example/pay/abc", fetch_redirect_response=False)
        tx_ref, amount = create.call_args[0][:2]
        self.assertTrue(tx_ref.startswith(f"school_fee_{self.user.id}_"))
        self.assertEqual(amount, Decimal("20000"))
        pending = self.client.session[PENDING_CHECKOUTS_KEY][tx_ref]
        self.assertEqual(pending["amount"], "20000")
        self.assertEqual(pending["fee_structure_id"], 1)
        self.assertEqual(pending["total_amount"], "50000.00")

    @mock.patch("fees.gateway.create_checkout")
    def test_post_over_remaining_is_rejected(self, create):
        self.routes["fee-payments/"] = [raw_payment("20000.00")]
        response = self.client.post(
            reverse("fees:pay"), {"term": "first", "academic_year": 3, "amount": "30001"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertFormError(
            response.context["form"],
            "amount",
            "You cannot pay more than the remaining balance for this term.",
        )
        create.assert_not_called()

    @mock.patch("fees.gateway.create_checkout")
    def test_post_already_paid_is_rejected(self, create):
        self.routes["fee-payments/"] = [raw_payment("50000.00", status="paid")]
        response = self.client.post(
            reverse("fees:pay"), {"term": "first", "academic_year": 3, "amount": "1"}
        )
        self.assertContains(response, "This term has already been paid for the selected academic year.")
        create.assert_not_called()

    @mock.patch("fees.gateway.create_checkout")
    def test_post_blank_amount_pays_remaining(self, create):
        create.return_value = "https://checkout.example/pay/x"
        self.routes["fee-payments/"] = [raw_payment("20000.00")]
        self.client.post(reverse("fees:pay"), {"term": "first", "academic_year": 3})
        self.assertEqual(create.call_args[0][1], Decimal("30000.00"))

    @mock.patch("fees.gateway.create_checkout", return_value="https://checkout.example/pay/new")
    def test_abandoned_checkouts_are_pruned(self, create):
        now = int(time.time())
        pending = {"school_fee_1_stale": {"created_at": now - 2 * 24 * 60 * 60, "amount": "1"}}
        for i in range(MAX_PENDING_CHECKOUTS + 5):
            pending[f"school_fee_1_{i}"] = {"created_at": now - 100 + i, "amount": "1"}
        session = self.client.session
        session[PENDING_CHECKOUTS_KEY] = pending
        session.save()
        self.client.post(reverse("fees:pay"), {"term": "first", "academic_year": 3, "amount": "20000"})
        kept = self.client.session[PENDING_CHECKOUTS_KEY]
        tx_ref = create.call_args[0][0]
        self.assertEqual(len(kept), MAX_PENDING_CHECKOUTS)
        self.assertIn(tx_ref, kept)
        self.assertNotIn("school_fee_1_stale", kept)
        self.assertNotIn("school_fee_1_0", kept)
        self.assertIn(f"school_fee_1_{MAX_PENDING_CHECKOUTS + 4}", kept)


@override_settings(FLUTTERWAVE_SECRET_KEY="sk_test", PAYMENT_CURRENCY="NGN")
class VerifyTransactionTests(SimpleTestCase):
    def response(self, status_code=200, **data):
        r = mock.Mock(status_code=status_code, ok=status_code < 400, text="")
        r.json.return_value = {
            "status": "success",
            "data": {"status": "successful", "tx_ref": "school_fee_1_1", "amount": 20000, "currency": "NGN", **data},
        }
        return r

    @mock.patch("fees.gateway.requests.get")
    def test_verified(self, get):
        get.return_value = self.response()
        data = verify_transaction("123", "school_fee_1_1", Decimal("20000"))
        self.assertEqual(data["status"], "successful")

    @mock.patch("fees.gateway.requests.get")
    def test_amount_mismatch_is_definitive(self, get):
        get.return_value = self.response(amount=100)
        with self.assertLogs("fees.gateway", level="ERROR"):
            with self.assertRaises(GatewayError) as ctx:
                verify_transaction("123", "school_fee_1_1", Decimal("20000"))
        self.assertNotIsInstance(ctx.exception, GatewayUnavailable)

    @mock.patch("fees.gateway.requests.get", side_effect=requests.ConnectionError("refused"))
    def test_connection_failure_is_unavailable(self, get):
        with self.assertLogs("fees.gateway", level="ERROR"):
            with self.assertRaises(GatewayUnavailable):
                verify_transaction("123", "school_fee_1_1", Decimal("20000"))

    @mock.patch("fees.gateway.requests.get")
    def test_gateway_5xx_is_unavailable(self, get):
        get.return_value = self.response(status_code=503)
        get.return_value.json.side_effect = ValueError
        with self.assertLogs("fees.gateway", level="ERROR"):
            with self.assertRaises(GatewayUnavailable):
                verify_transaction("123", "school_fee_1_1", Decimal("20000"))


@mock.patch("fees.services.notify_unrecorded_payment")
@mock.patch("backend_api.service.api_post")
@mock.patch("fees.gateway.verify_transaction")
class CallbackTests(PortalTestCase):
    def callback(self, status, tx_ref, transaction_id="123"):
        return self.client.get(
            reverse("fees:callback"),
            {"status": status, "tx_ref": tx_ref, "transaction_id": transaction_id},
        )

    def test_successful_payment_is_recorded(self, verify, api_post, notify):
        tx_ref = self.set_pending()
        response = self.callback("successful", tx_ref)
        self.assertRedirects(response, reverse("fees:index"), fetch_redirect_response=False)
        verify.assert_called_once_with("123", tx_ref, Decimal("20000"))
        path, body = api_post.call_args[0]
        self.assertEqual(path, "fee-payments/")
        self.assertEqual(body["student"], 42)
        self.assertEqual(body["amount_paid"], "20000")
        self.assertEqual(body["total_amount"], "50000")
        self.assertEqual(body["payment_method"], "flutterwave")
        self.assertEqual(body["transaction_id"], "123")
        self.assertEqual(body["remarks"], "Flutterwave Payment - 123")
        self.assertNotIn("status", body)
        self.assertEqual(api_post.call_args[1]["token"], "token")
        self.assertNotIn(tx_ref, self.client.session[PENDING_CHECKOUTS_KEY])

    def test_cancelled_creates_nothing(self, verify, api_post, notify):
        tx_ref = self.set_pending()
        response = self.callback("cancelled", tx_ref)
        self.assertRedirects(response, reverse("fees:index"), fetch_redirect_response=False)
        verify.assert_not_called()
        api_post.assert_not_called()
        self.assertNotIn(tx_ref, self.client.session[PENDING_CHECKOUTS_KEY])

    def test_verification_mismatch_is_not_recorded(self, verify, api_post, notify):
        verify.side_effect = GatewayError("The payment could not be verified")
        tx_ref = self.set_pending()
        with self.assertLogs("fees.services", level="ERROR"):
            response = self.callback("successful", tx_ref)
        self.assertRedirects(response, reverse("fees:index"), fetch_redirect_response=False)
        api_post.assert_not_called()
        notify.delay.assert_not_called()
        self.assertFalse(UnrecordedPayment.objects.exists())
        self.assertNotIn(tx_ref, self.client.session[PENDING_CHECKOUTS_KEY])

    def test_unreachable_gateway_is_ledgered_and_retryable(self, verify, api_post, notify):
        verify.side_effect = GatewayUnavailable("Payment gateway unavailable")
        tx_ref = self.set_pending()
        with self.assertLogs("fees.services", level="ERROR"):
            response = self.callback("successful", tx_ref)
        self.assertEqual(response.status_code, 200)
        self.assertTemplateUsed(response, "fees/payment_unrecorded.html")
        self.assertContains(response, "Try again")
        self.assertContains(response, "quote transaction 123")
        api_post.assert_not_called()
        record = UnrecordedPayment.objects.get(tx_ref=tx_ref)
        self.assertEqual(record.gateway_transaction_id, "123")
        self.assertEqual(record.amount, Decimal("20000"))
        self.assertFalse(record.resolved)
        notify.delay.assert_called_once_with(record.id)
        self.assertIn(tx_ref, self.client.session[PENDING_CHECKOUTS_KEY])

        verify.side_effect = None
        response = self.callback("successful", tx_ref)
        self.assertRedirects(response, reverse("fees:index"), fetch_redirect_response=False)
        self.assertEqual(api_post.call_count, 1)
        record.refresh_from_db()
        self.assertTrue(record.resolved)
        self.assertNotIn(tx_ref, self.client.session[PENDING_CHECKOUTS_KEY])

    def test_replayed_callback_is_refused(self, verify, api_post, notify):
        tx_ref = self.set_pending()
        self.callback("successful", tx_ref)
        response = self.callback("successful", tx_ref)
        self.assertEqual(api_post.call_count, 1)
        self.assertRedirects(response, reverse("fees:index"), fetch_redirect_response=False)

    def test_backend_failure_is_ledgered_and_reported(self, verify, api_post, notify):
        api_post.side_effect = BackendError("Server error", status_code=500, detail="boom")
        tx_ref = self.set_pending()
        with self.assertLogs("fees.services", level="ERROR"):
            response = self.callback("successful", tx_ref)
        self.assertEqual(response.status_code, 200)
        self.assertTemplateUsed(response, "fees/payment_unrecorded.html")
        self.assertContains(response, "contact an administrator and quote transaction 123")
        record = UnrecordedPayment.objects.get(tx_ref=tx_ref)
        self.assertEqual(record.gateway_transaction_id, "123")
        self.assertEqual(record.amount, Decimal("20000"))
        self.assertEqual(record.user, self.user)
        self.assertFalse(record.resolved)
        notify.delay.assert_called_once_with(record.id)
        self.assertEqual(api_post.call_count, 1)

    def test_backend_auth_failure_after_charge_is_ledgered(self, verify, api_post, notify):
        api_post.side_effect = BackendAuthError("Unauthorized", status_code=401)
        tx_ref = self.set_pending()
        with self.assertLogs("fees.services", level="ERROR"):
            response = self.callback("successful", tx_ref)
        self.assertTemplateUsed(response, "fees/payment_unrecorded.html")
        self.assertTrue(UnrecordedPayment.objects.filter(tx_ref=tx_ref).exists())


class QuoteApiTests(PortalTestCase):
    def setUp(self):
        super().setUp()
        self.url = reverse("fees:api_quote")

    def test_quote(self):
        self.routes["fee-payments/"] = [raw_payment("20000.00")]
        response = self.client.get(self.url, {"term": "first", "academic_year": 3, "amount": "30001"})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["full_fee"], "50000.00")
        self.assertEqual(data["remaining"], "30000.00")
        self.assertTrue(data["can_submit"])
        self.assertEqual(data["amount_error"], PaymentRejected.EXCEEDS_BALANCE)

    def test_unknown_fee(self):
        response = self.client.get(self.url, {"term": "first", "academic_year": 2})
        data = response.json()
        self.assertIsNone(data["full_fee"])
        self.assertFalse(data["can_submit"])
        self.assertEqual(data["block_reason"], PaymentRejected.FEE_UNKNOWN)

    def test_invalid_term(self):
        response = self.client.get(self.url, {"term": "fourth", "academic_year": 3})
        self.assertEqual(response.status_code, 400)

    def test_expired_backend_session(self):
        self.routes["fee-structures/"] = BackendAuthError("Unauthorized", status_code=401)
        response = self.client.get(self.url, {"term": "first", "academic_year": 3})
        self.assertEqual(response.status_code, 401)
        self.assertNotIn("_auth_user_id", self.client.session)

    def test_backend_unavailable(self):
        self.routes["fee-structures/"] = BackendError("down")
        response = self.client.get(self.url, {"term": "first", "academic_year": 3})
        self.assertEqual(response.status_code, 502)

    def test_requires_login(self):
        self.client.logout()
        response = self.client.get(self.url, {"term": "first", "academic_year": 3})
        self.assertEqual(response.status_code, 403)


class FinanceOverviewTests(PortalTestCase):
    role = "management"
    backend_user = {"id": 7, "role": "management", "profile": {}}

    def test_overview(self):
        self.routes["dashboard/stats/"] = {"totalRevenue": "75000", "pendingFees": "25000", "totalStudents": 2}
        self.routes["fee-payments/"] = [
            raw_payment("50000.00", status="paid"),
            raw_payment("25000.00", status="overdue", term="second", id=6, student=43),
        ]
        response = self.client.get(reverse("fees:finance"))
        self.assertEqual(response.status_code, 200)
        overview = response.context["overview"]
        self.assertEqual(overview["collection_rate"], 75)
        self.assertEqual(overview["overdue_amount"], Decimal("25000.00"))
        self.assertEqual(len(response.context["overdue"]), 1)

    def test_students_are_forbidden(self):
        self.user.role = "student"
        self.user.save()
        response = self.client.get(reverse("fees:finance"))
        self.assertEqual(response.status_code, 403)


class PaymentFormTests(SimpleTestCase):
    years = [{"id": 2, "name": "2023/2024"}, {"id": 3, "name": "2024/2025"}]

    def test_paid_terms_are_disabled(self):
        html = str(PaymentForm(academic_years=self.years, paid={"first"})["term"])
        self.assertInHTML('<option value="first" disabled>First Term (Already Paid)</option>', html)
        self.assertInHTML('<option value="second">Second Term</option>', html)

    def test_cleans_year_to_int(self):
        form = PaymentForm({"term": "second", "academic_year": "3", "amount": ""}, academic_years=self.years)
        self.assertTrue(form.is_valid(), form.errors)
        self.assertEqual(form.cleaned_data["academic_year"], 3)
        self.assertIsNone(form.cleaned_data["amount"])
