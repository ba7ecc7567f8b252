import logging
from django.conf import settings
from django.contrib import messages
from django.contrib.auth import logout
from django.shortcuts import render
from django.urls import reverse
from backend_api.client import BackendAuthError
from .session import ApiSession

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."


def expire_session(request):
    """Log the user out after the backend rejected their token."""
    user_id = getattr(request.user, "pk", None)
    logger.info("Backend session expired for user %s", user_id)
    logout(request)
    request.api_session = ApiSession(request.session)
    messages.error(request, SESSION_EXPIRED_MESSAGE)
    return render(
        request,
        "accounts/session_expired.html",
        {
            "login_url": reverse("accounts:login"),
            "delay_seconds": settings.SESSION_EXPIRED_LOGOUT_DELAY_SECONDS,
        },
        status=401,
    )


class ApiSessionMiddleware:
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.api_session = ApiSession(request.session)
        user = getattr(request, "user", None)
        if (
            user
            and user.is_authenticated
            and getattr(user, "external_user_id", None)
            and not request.api_session.is_active
        ):
            return expire_session(request)
        return self.get_response(request)

    def process_exception(self, request, exception):
        if isinstance(exception, BackendAuthError):
            return expire_session(request)
        return None
