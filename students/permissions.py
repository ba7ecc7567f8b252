import logging
from backend_api.service import to_int
from .services import student_profiles

logger = logging.getLogger(__name__)


def can_view_student(request, student_id) -> bool:
    if not getattr(request.user, "is_authenticated", False):
        return False
    sid = to_int(student_id)
    allowed = any(p["id"] == sid for p in student_profiles(request))
    if not allowed:
        logger.warning(
            "Permission denied: user %s has no link to student %s",
            request.user.pk,
            student_id,
        )
    return allowed
