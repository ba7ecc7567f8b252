from unittest import mock

from django.contrib.auth.backends import ModelBackend
from django.core.cache import cache
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from backend_api.client import BackendAuthError, BackendError
from .backends import BackendApiAuthBackend, sync_user
from .models import User
from .session import ApiSession

MODEL_BACKEND = f"{ModelBackend.__module__}.{ModelBackend.__name__}"

LOGIN_RESPONSE = {
    "access": "access-token",
    "refresh": "refresh-token",
    "role": "parent",
    "user": {
        "id": 7,
        "username": "mrs.obi",
        "email": "obi@example.com",
        "first_name": "Grace",
        "last_name": "Obi",
        "phone_number": "08012345678",
    },
}
PARENT_PROFILE = {
    **LOGIN_RESPONSE["user"],
    "role": "parent",
    "profile": {
        "children_details": [
            {"id": 42, "student_id": "STU042", "current_class_name": "Grade 10 A"},
        ]
    },
}


class ApiSessionTests(SimpleTestCase):
    def test_start_and_clear(self):
        storage = {}
        session = ApiSession(storage)
        self.assertFalse(session.is_active)
        self.assertEqual(session.user, {})
        session.start("tok", {"id": 7})
        self.assertTrue(session.is_active)
        self.assertEqual(session.token, "tok")
        self.assertEqual(session.user, {"id": 7})
        session.update_user({"id": 7, "role": "parent"})
        self.assertEqual(storage[ApiSession.USER_KEY]["role"], "parent")
        session.clear()
        self.assertEqual(storage, {})

    def test_sessions_are_independent(self):
        a, b = ApiSession({}), ApiSession({})
        a.start("one", {})
        self.assertIsNone(b.token)


class BackendAuthTests(TestCase):
    def setUp(self):
        self.request = RequestFactory().post("/accounts/login/")

    def test_sync_user_creates_shadow(self):
        user = sync_user(LOGIN_RESPONSE["user"], role="parent")
        self.assertEqual(user.external_user_id, "7")
        self.assertEqual(user.role, "parent")
        self.assertEqual(user.phone, "08012345678")
        self.assertFalse(user.has_usable_password())
        again = sync_user({**LOGIN_RESPONSE["user"], "email": "new@example.com"}, role="parent")
        self.assertEqual(again.pk, user.pk)
        self.assertEqual(again.email, "new@example.com")

    @mock.patch("accounts.backends.backend_login", return_value=LOGIN_RESPONSE)
    def test_authenticate(self, backend_login):
        user = BackendApiAuthBackend().authenticate(self.request, username="mrs.obi", password="pw")
        backend_login.assert_called_once_with("mrs.obi", "pw")
        self.assertEqual(user.backend_login["access"], "access-token")
        self.assertEqual(user.backend_login["user"]["role"], "parent")
        self.assertTrue(user.has_student_fees)

    @mock.patch("accounts.backends.backend_login", return_value=LOGIN_RESPONSE)
    def test_local_account_keeps_its_username(self, backend_login):
        admin = User.objects.create_superuser("mrs.obi", "admin@example.com", "local-admin-pw")
        with self.assertLogs("accounts.backends", level="WARNING"):
            user = BackendApiAuthBackend().authenticate(self.request, username="mrs.obi", password="pw")
        self.assertNotEqual(user.pk, admin.pk)
        self.assertEqual(user.username, "user-7")
        self.assertEqual(user.external_user_id, "7")
        admin.refresh_from_db()
        self.assertEqual(admin.username, "mrs.obi")
        self.assertIsNone(admin.external_user_id)
        self.assertTrue(admin.check_password("local-admin-pw"))
        again = sync_user(LOGIN_RESPONSE["user"], role="parent")
        self.assertEqual(again.pk, user.pk)

    @mock.patch("accounts.backends.backend_login", side_effect=BackendAuthError("Unauthorized", status_code=401))
    def test_bad_credentials(self, backend_login):
        self.assertIsNone(BackendApiAuthBackend().authenticate(self.request, username="x", password="y"))
        self.assertFalse(User.objects.exists())

    @mock.patch("accounts.backends.backend_login", side_effect=BackendError("down"))
    def test_backend_down(self, backend_login):
        with self.assertLogs("accounts.backends", level="WARNING"):
            self.assertIsNone(BackendApiAuthBackend().authenticate(self.request, username="x", password="y"))

    @mock.patch("accounts.backends.backend_login", return_value={"user": {"id": 7}})
    def test_missing_token(self, backend_login):
        with self.assertLogs("accounts.backends", level="ERROR"):
            self.assertIsNone(BackendApiAuthBackend().authenticate(self.request, username="x", password="y"))


class LoginViewTests(TestCase):
    def setUp(self):
        cache.clear()

    @mock.patch("accounts.views.fetch_profile", return_value=PARENT_PROFILE)
    @mock.patch("accounts.backends.backend_login", return_value=LOGIN_RESPONSE)
    def test_login_starts_api_session(self, backend_login, fetch_profile):
        response = self.client.post(
            reverse("accounts:login"), {"username": "mrs.obi", "password": "pw", "next": "/students/"}
        )
        self.assertRedirects(response, "/students/", fetch_redirect_response=False)
        session = self.client.session
        self.assertEqual(session[ApiSession.TOKEN_KEY], "access-token")
        self.assertEqual(session[ApiSession.USER_KEY]["profile"]["children_details"][0]["id"], 42)
        self.assertIn("_auth_user_id", session)

    @mock.patch("accounts.views.fetch_profile", return_value=PARENT_PROFILE)
    @mock.patch("accounts.backends.backend_login", return_value=LOGIN_RESPONSE)
    def test_external_next_is_ignored(self, backend_login, fetch_profile):
        response = self.client.post(
            reverse("accounts:login"),
            {"username": "mrs.obi", "password": "pw", "next": "https://evil.example/"},
        )
        self.assertRedirects(response, reverse("home"), fetch_redirect_response=False)

    @mock.patch("accounts.backends.backend_login", side_effect=BackendAuthError("Unauthorized", status_code=401))
    def test_login_failure(self, backend_login):
        response = self.client.post(reverse("accounts:login"), {"username": "x", "password": "y"})
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Unable to sign in")
        self.assertNotIn(ApiSession.TOKEN_KEY, self.client.session)

    def test_logout_clears_api_session(self):
        user = User.objects.create(username="u", external_user_id="7")
        self.client.force_login(user, backend=MODEL_BACKEND)
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "tok"
        session.save()
        response = self.client.post(reverse("accounts:logout"))
        self.assertRedirects(response, reverse("accounts:login"), fetch_redirect_response=False)
        self.assertNotIn(ApiSession.TOKEN_KEY, self.client.session)
        self.assertNotIn("_auth_user_id", self.client.session)


@override_settings(SESSION_EXPIRED_LOGOUT_DELAY_SECONDS=2)
class SessionExpiryTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = User.objects.create(username="ada", role="student", external_user_id="7")
        self.client.force_login(self.user, backend=MODEL_BACKEND)

    def start_api_session(self):
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "tok"
        session[ApiSession.USER_KEY] = {
            "id": 7,
            "role": "student",
            "profile": {"id": 42, "current_class_name": "Grade 10 A"},
        }
        session.save()

    def assertExpired(self, response):
        self.assertEqual(response.status_code, 401)
        self.assertTemplateUsed(response, "accounts/session_expired.html")
        self.assertContains(response, 'content="2;url=/accounts/login/"', status_code=401)
        self.assertContains(response, "Your session has expired", status_code=401)
        self.assertNotIn("_auth_user_id", self.client.session)

    @mock.patch("backend_api.service.api_get", side_effect=BackendAuthError("Unauthorized", status_code=401))
    def test_backend_401_logs_out(self, api_get):
        self.start_api_session()
        self.assertExpired(self.client.get(reverse("fees:index")))

    def test_missing_token_logs_out(self):
        self.assertExpired(self.client.get(reverse("home")))

    def test_local_superuser_without_token_is_kept(self):
        admin = User.objects.create(username="root", is_superuser=True, is_staff=True)
        self.client.force_login(admin, backend=MODEL_BACKEND)
        response = self.client.get(reverse("home"))
        self.assertEqual(response.status_code, 200)


class HomeTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = User.objects.create(username="ada", role="student", external_user_id="7")
        self.client.force_login(self.user, backend=MODEL_BACKEND)
        session = self.client.session
        session[ApiSession.TOKEN_KEY] = "tok"
        session[ApiSession.USER_KEY] = {
            "id": 7,
            "role": "student",
            "profile": {"id": 42, "current_class_name": "Grade 10 A"},
        }
        session.save()
        self.routes = {
            "fee-structures/": [{"id": 1, "academic_year": 3, "grade": 10, "fee_type": "tuition", "amount": "50000"}],
            "academic-years/": [{"id": 3, "name": "2024/2025"}],
            "fee-payments/": [
                {"id": 1, "student": 42, "academic_year": 3, "term": "first", "amount_paid": "50000", "status": "paid"},
            ],
        }

    def test_dashboard(self):
        with mock.patch("backend_api.service.api_get", side_effect=lambda path, **kw: self.routes[path]):
            response = self.client.get(reverse("home"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.context["has_result_access"])
        self.assertEqual(response.context["session_pending"], 100000)
        self.assertEqual(len(response.context["grid"]), 1)
