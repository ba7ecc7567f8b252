from unittest import mock

from django.contrib.auth.backends import ModelBackend
from django.test import SimpleTestCase, TestCase
from django.urls import reverse

from accounts.models import User
from accounts.session import ApiSession
from backend_api.service import normalize_fee_payment, normalize_result
from .views import gated_sections

MODEL_BACKEND = f"{ModelBackend.__module__}.{ModelBackend.__name__}"


def raw_result(subject, term="first", year=3, percentage="70"):
    return {
        "id": hash((subject, term, year)) % 10000,
        "student": 42,
        "subject": {"id": 1, "name": subject},
        "term": term,
        "academic_year": {"id": year, "name": f"Year {year}"},
        "ca_total": "30",
        "exam_score": "40",
        "marks_obtained": "70",
        "total_marks": "100",
        "percentage": percentage,
        "grade": "B",
    }


def raw_payment(term="first", status="paid", year=3, student=42):
    return {
        "id": 1,
        "student": student,
        "academic_year": year,
        "term": term,
        "amount_paid": "50000",
        "total_amount": "50000",
        "status": status,
    }


class GatedSectionsTests(SimpleTestCase):
    def sections(self, results, payments):
        return gated_sections(
            [normalize_result(r) for r in results],
            [normalize_fee_payment(p) for p in payments],
            42,
        )

    def test_paid_term_is_visible(self):
        [section] = self.sections(
            [raw_result("Maths", percentage="80"), raw_result("English", percentage="65")],
            [raw_payment("first")],
        )
        self.assertTrue(section["visible"])
        self.assertEqual([r["subject"] for r in section["results"]], ["English", "Maths"])
        self.assertEqual(str(section["average"]), "72.50")

    def test_partial_payment_hides_results(self):
        [section] = self.sections([raw_result("Maths")], [raw_payment("first", status="partial")])
        self.assertFalse(section["visible"])
        self.assertEqual(section["results"], [])
        self.assertEqual(section["count"], 1)
        self.assertIsNone(section["average"])

    def test_each_term_gated_separately(self):
        sections = self.sections(
            [raw_result("Maths"), raw_result("Maths", term="second")],
            [raw_payment("first")],
        )
        self.assertEqual([(s["term"], s["visible"]) for s in sections], [("first", True), ("second", False)])

    def test_other_students_payment_does_not_unlock(self):
        [section] = self.sections([raw_result("Maths")], [raw_payment("first", student=43)])
        self.assertFalse(section["visible"])

    def test_final_results_follow_third_term(self):
        results = [raw_result("Maths", term="final")]
        self.assertFalse(self.sections(results, [raw_payment("first"), raw_payment("second")])[0]["visible"])
        self.assertTrue(self.sections(results, [raw_payment("third")])[0]["visible"])

    def test_latest_year_first(self):
        sections = self.sections(
            [raw_result("Maths", year=2), raw_result("Maths", year=3)],
            [],
        )
        self.assertEqual([s["academic_year_id"] for s in sections], [3, 2])


class ResultsViewTests(TestCase):
    def setUp(self):
        user = User.objects.create(username="ada", role="student", external_user_id="7")
        self.client.force_login(user, backend=MODEL_BACKEND)
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "tok"
        session[ApiSession.USER_KEY] = {
            "id": 7,
            "role": "student",
            "profile": {"id": 42, "current_class_name": "Grade 10 A"},
        }
        session.save()
        self.routes = {
            "results/": [raw_result("Maths"), raw_result("Maths", term="second")],
            "fee-payments/": [],
        }
        patcher = mock.patch(
            "backend_api.service.api_get", side_effect=lambda path, **kw: self.routes[path]
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_unpaid_student_is_blocked(self):
        response = self.client.get(reverse("results:index"))
        self.assertTemplateUsed(response, "results/blocked.html")
        self.assertContains(response, "Outstanding school fees")
        self.assertNotContains(response, "<td>Maths</td>")

    def test_paid_term_shown_other_locked(self):
        self.routes["fee-payments/"] = [raw_payment("first")]
        response = self.client.get(reverse("results:index"))
        self.assertTemplateUsed(response, "results/index.html")
        visible = {s["term"]: s["visible"] for s in response.context["sections"]}
        self.assertEqual(visible, {"first": True, "second": False})
        self.assertContains(response, "locked until this term")

    def test_filter_by_term(self):
        self.routes["fee-payments/"] = [raw_payment("first")]
        response = self.client.get(reverse("results:index"), {"term": "first"})
        self.assertEqual([s["term"] for s in response.context["sections"]], ["first"])

    def test_no_results(self):
        self.routes["results/"] = []
        response = self.client.get(reverse("results:index"))
        self.assertTemplateUsed(response, "results/index.html")
        self.assertContains(response, "No results have been published yet.")
