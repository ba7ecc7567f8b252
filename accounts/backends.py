import logging
from django.contrib.auth.backends import ModelBackend
from django.db import IntegrityError, transaction
from django.utils import timezone
from backend_api.client import BackendAuthError, BackendError
from backend_api.service import login as backend_login
from .models import User

logger = logging.getLogger(__name__)


def _username_for(payload: dict, external_id: str) -> str:
    username = payload.get("username") or f"user-{external_id}"
    taken = User.objects.filter(username=username).exclude(external_user_id=external_id)
    if taken.exists():
        # local accounts such as /admin/ superusers keep their username
        logger.warning(
            "Username %s is held by another local account; backend user %s "
            "signs in as user-%s",
            username,
            external_id,
            external_id,
        )
        return f"user-{external_id}"
    return username


def sync_user(payload: dict, role=None) -> User:
    """Create or refresh the local shadow of a backend user."""
    external_id = str(payload.get("id"))
    user, created = User.objects.update_or_create(
        external_user_id=external_id,
        defaults={
            "username": _username_for(payload, external_id),
            "email": payload.get("email") or "",
            "first_name": payload.get("first_name") or "",
            "last_name": payload.get("last_name") or "",
            "phone": payload.get("phone_number") or "",
            "role": role or payload.get("role") or "student",
            "last_validated_at": timezone.now(),
        },
    )
    if created:
        user.set_unusable_password()
        user.save(update_fields=["password"])
    return user


class BackendApiAuthBackend(ModelBackend):
    """Authenticate against the school backend's /auth/login/ endpoint.

    On success the returned user carries ``backend_login`` (access token and
    user payload) for the login view to place in the API session.
    """

    def authenticate(self, request, username=None, password=None, **kwargs):
        if not username or not password:
            return None
        try:
            data = backend_login(username, password)
        except BackendAuthError:
            return None
        except BackendError as e:
            logger.warning("Backend login for %s failed: %s", username, str(e))
            return None
        data = data or {}
        payload = data.get("user") or {}
        if not data.get("access") or payload.get("id") is None:
            logger.error("Backend login for %s returned no token or user id", username)
            return None
        try:
            with transaction.atomic():
                user = sync_user(payload, role=data.get("role"))
        except IntegrityError as e:
            logger.error(
                "Could not sync backend user %s for %s: %s",
                payload.get("id"),
                username,
                str(e),
            )
            return None
        if not self.user_can_authenticate(user):
            return None
        user.backend_login = {
            "access": data["access"],
            "user": {**payload, "role": data.get("role") or payload.get("role")},
        }
        return user
