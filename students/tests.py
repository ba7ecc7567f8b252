from django.contrib.auth.backends import ModelBackend
from django.test import TestCase
from django.urls import reverse

from accounts.models import User
from accounts.session import ApiSession
from .services import ACTIVE_STUDENT_KEY

MODEL_BACKEND = f"{ModelBackend.__module__}.{ModelBackend.__name__}"

PARENT = {
    "id": 9,
    "role": "parent",
    "profile": {
        "children_details": [
            {"id": 42, "student_id": "STU042", "current_class_name": "Grade 10 A"},
            {"id": 43, "student_id": "STU043", "current_class_name": "Grade 7 B"},
        ]
    },
}


class SwitchStudentTests(TestCase):
    def setUp(self):
        user = User.objects.create(username="parent", role="parent", external_user_id="9")
        self.client.force_login(user, backend=MODEL_BACKEND)
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "tok"
        session[ApiSession.USER_KEY] = PARENT
        session.save()

    def test_list_defaults_to_first_child(self):
        response = self.client.get(reverse("students:list"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([p["id"] for p in response.context["profiles"]], [42, 43])
        self.assertEqual(response.context["active"]["id"], 42)
        self.assertEqual(self.client.session[ACTIVE_STUDENT_KEY], 42)

    def test_switch_to_linked_child(self):
        response = self.client.get(reverse("students:switch"), {"student_id": "43"})
        self.assertRedirects(response, reverse("home"), fetch_redirect_response=False)
        self.assertEqual(self.client.session[ACTIVE_STUDENT_KEY], 43)

    def test_switch_follows_local_next(self):
        response = self.client.get(
            reverse("students:switch"), {"student_id": "43", "next": "/fees/"}
        )
        self.assertRedirects(response, "/fees/", fetch_redirect_response=False)

    def test_cannot_switch_to_unlinked_student(self):
        with self.assertLogs("students.permissions", level="WARNING"):
            response = self.client.get(reverse("students:switch"), {"student_id": "99"})
        self.assertRedirects(response, reverse("students:list"), fetch_redirect_response=False)
        self.assertNotEqual(self.client.session.get(ACTIVE_STUDENT_KEY), 99)

    def test_stale_selection_falls_back(self):
        session = self.client.session
        session[ACTIVE_STUDENT_KEY] = 99
        session.save()
        response = self.client.get(reverse("students:list"))
        self.assertEqual(response.context["active"]["id"], 42)
