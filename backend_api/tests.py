from datetime import date
from decimal import Decimal
from unittest import mock

import requests
from django.core.cache import cache
from django.test import SimpleTestCase, override_settings

from accounts.session import ApiSession
from .client import BackendAuthError, BackendError, api_get, api_post
from .service import (
    create_fee_payment,
    fetch_academic_years,
    fetch_fee_payments,
    fetch_fee_structures,
    normalize_fee_payment,
    normalize_fee_structure,
    student_profiles_from_user,
    to_int,
)


def response(status=200, data=None, text=None):
    r = mock.Mock()
    r.status_code = status
    r.ok = status < 400
    if data is None:
        r.json.side_effect = ValueError("no json")
        r.text = text or ""
        r.content = (text or "").encode()
    else:
        r.json.return_value = data
        r.text = text or "json"
        r.content = b"json"
    return r


@override_settings(BACKEND_API_URL="https://school.example/api/", BACKEND_API_TIMEOUT=7)
class ClientTests(SimpleTestCase):
    @mock.patch("backend_api.client.requests.request")
    def test_get_sends_bearer_token(self, request):
        request.return_value = response(data=[{"id": 1}])
        self.assertEqual(api_get("/fee-payments/", token="abc"), [{"id": 1}])
        method, url = request.call_args[0]
        self.assertEqual((method, url), ("GET", "https://school.example/api/fee-payments/"))
        kwargs = request.call_args[1]
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer abc")
        self.assertEqual(kwargs["timeout"], 7)

    @mock.patch("backend_api.client.requests.request")
    def test_no_token_no_authorization_header(self, request):
        request.return_value = response(data={"access": "x"})
        api_post("auth/login/", {"username": "a", "password": "b"})
        self.assertNotIn("Authorization", request.call_args[1]["headers"])
        self.assertEqual(request.call_args[1]["json"], {"username": "a", "password": "b"})

    @mock.patch("backend_api.client.requests.request")
    def test_401_raises_auth_error(self, request):
        request.return_value = response(status=401, data={"detail": "Token expired"})
        with self.assertRaises(BackendAuthError) as cm:
            api_get("results/", token="stale")
        self.assertEqual(cm.exception.status_code, 401)

    @mock.patch("backend_api.client.requests.request")
    def test_error_message_from_body(self, request):
        request.return_value = response(status=400, data={"message": "Invalid term"})
        with self.assertLogs("backend_api.client", level="ERROR"):
            with self.assertRaises(BackendError) as cm:
                api_post("fee-payments/", {}, token="t")
        self.assertNotIsInstance(cm.exception, BackendAuthError)
        self.assertEqual(str(cm.exception), "Invalid term")
        self.assertEqual(cm.exception.status_code, 400)

    @mock.patch("backend_api.client.requests.request")
    def test_error_without_json(self, request):
        request.return_value = response(status=502, text="<html>Bad gateway</html>")
        with self.assertLogs("backend_api.client", level="ERROR"):
            with self.assertRaises(BackendError) as cm:
                api_get("results/")
        self.assertEqual(str(cm.exception), "HTTP 502")

    @mock.patch("backend_api.client.requests.request")
    def test_network_failure(self, request):
        request.side_effect = requests.ConnectionError("refused")
        with self.assertLogs("backend_api.client", level="ERROR"):
            with self.assertRaises(BackendError) as cm:
                api_get("results/")
        self.assertIsNone(cm.exception.status_code)

    @mock.patch("backend_api.client.requests.request")
    def test_empty_body(self, request):
        r = response(data={})
        r.content = b""
        request.return_value = r
        self.assertIsNone(api_post("fee-payments/", {}))


class NormalizationTests(SimpleTestCase):
    def test_ids_are_integers(self):
        self.assertEqual(to_int("3"), 3)
        self.assertEqual(to_int(3), 3)
        self.assertIsNone(to_int("2024/2025"))
        self.assertIsNone(to_int(None))
        self.assertIsNone(to_int(True))

    def test_fee_structure_with_string_year(self):
        fs = normalize_fee_structure(
            {"id": "1", "academic_year": "3", "grade": "10", "fee_type": "Tuition", "amount": "50000.00"}
        )
        self.assertEqual(fs["academic_year_id"], 3)
        self.assertEqual(fs["grade"], 10)
        self.assertEqual(fs["fee_type"], "tuition")
        self.assertEqual(fs["amount"], Decimal("50000.00"))

    def test_fee_structure_with_nested_year(self):
        fs = normalize_fee_structure(
            {"id": 1, "academic_year": {"id": 3, "name": "2024/2025"}, "grade": 10, "fee_type": "tuition", "amount": 50000}
        )
        self.assertEqual(fs["academic_year_id"], 3)
        self.assertEqual(fs["academic_year"], "2024/2025")

    def test_fee_payment(self):
        p = normalize_fee_payment(
            {
                "id": 5,
                "student": {"id": 42, "name": "Ada Obi"},
                "academic_year": "3",
                "term": "First",
                "amount_paid": "20000.50",
                "total_amount": None,
                "status": "PARTIAL",
                "payment_date": "2024-10-01T09:30:00Z",
            }
        )
        self.assertEqual(p["student_id"], 42)
        self.assertEqual(p["student_name"], "Ada Obi")
        self.assertEqual(p["academic_year_id"], 3)
        self.assertEqual(p["term"], "first")
        self.assertEqual(p["amount_paid"], Decimal("20000.50"))
        self.assertIsNone(p["total_amount"])
        self.assertEqual(p["status"], "partial")
        self.assertEqual(p["payment_date"], date(2024, 10, 1))
        self.assertIsNone(p["due_date"])

    def test_unknown_term_is_none(self):
        self.assertIsNone(normalize_fee_payment({"term": "summer"})["term"])

    def test_parent_sees_children(self):
        user = {
            "role": "parent",
            "profile": {
                "children_details": [
                    {"id": 42, "student_id": "STU042", "current_class_name": "Grade 10 A",
                     "user_details": {"first_name": "Ada", "last_name": "Obi"}},
                    {"id": "43", "student_id": "STU043", "current_class": "Grade 7"},
                    {"student_id": "no-id"},
                ]
            },
        }
        profiles = student_profiles_from_user(user)
        self.assertEqual([p["id"] for p in profiles], [42, 43])
        self.assertEqual(profiles[0]["name"], "Ada Obi")
        self.assertEqual(profiles[1]["current_class"], "Grade 7")

    def test_student_sees_own_profile(self):
        user = {
            "role": "student",
            "first_name": "Ada",
            "last_name": "Obi",
            "profile": {"id": 42, "student_id": "STU042", "current_class_name": "Grade 10 A"},
        }
        [profile] = student_profiles_from_user(user)
        self.assertEqual(profile["id"], 42)
        self.assertEqual(profile["name"], "Ada Obi")

    def test_staff_have_no_profiles(self):
        self.assertEqual(student_profiles_from_user({"role": "staff", "profile": {"id": 1}}), [])
        self.assertEqual(student_profiles_from_user(None), [])


class FetchTests(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.session = ApiSession({ApiSession.TOKEN_KEY: "tok"})

    @mock.patch("backend_api.service.api_get")
    def test_reference_data_is_cached(self, api_get):
        api_get.return_value = {"results": [{"id": 1, "academic_year": 3, "grade": 10, "fee_type": "tuition", "amount": "1"}]}
        first = fetch_fee_structures(self.session)
        second = fetch_fee_structures(self.session)
        self.assertEqual(first, second)
        api_get.assert_called_once_with("fee-structures/", token="tok")

    @mock.patch("backend_api.service.api_get")
    def test_academic_years_drop_rows_without_id(self, api_get):
        api_get.return_value = [{"id": 3, "name": "2024/2025"}, {"name": "broken"}]
        self.assertEqual(fetch_academic_years(self.session), [{"id": 3, "name": "2024/2025"}])

    @mock.patch("backend_api.service.api_get")
    def test_payments_filtered_by_student(self, api_get):
        api_get.return_value = [{"id": 1, "student": 42}, {"id": 2, "student": "43"}]
        payments = fetch_fee_payments(self.session, student_id=43)
        self.assertEqual([p["id"] for p in payments], [2])

    @mock.patch("backend_api.service.api_post")
    def test_create_payment_never_sends_status(self, api_post):
        create_fee_payment(
            self.session,
            {"student": 42, "amount_paid": Decimal("200.00"), "status": "paid"},
        )
        api_post.assert_called_once_with(
            "fee-payments/", {"student": 42, "amount_paid": "200.00"}, token="tok"
        )
