import logging
from django.contrib import messages
from django.contrib.auth.decorators import login_required
from django.shortcuts import redirect, render
from django.utils.http import url_has_allowed_host_and_scheme
from backend_api.client import BackendAuthError, BackendError
from backend_api.service import fetch_profile, to_int
from .permissions import can_view_student
from .services import ACTIVE_STUDENT_KEY, active_student_profile, student_profiles

logger = logging.getLogger(__name__)


@login_required
def list_students(request):
    return render(
        request,
        "students/list.html",
        {
            "profiles": student_profiles(request),
            "active": active_student_profile(request),
            "active_nav": "students",
        },
    )


@login_required
def switch_student(request):
    sid = request.GET.get("student_id")
    if not sid:
        messages.error(request, "No student ID provided.")
        return redirect("students:list")

    if not can_view_student(request, sid):
        messages.error(request, "Unable to switch to that student. Please ensure they are linked to your profile.")
        return redirect("students:list")

    request.session[ACTIVE_STUDENT_KEY] = to_int(sid)

    nxt = request.GET.get("next")
    if nxt and url_has_allowed_host_and_scheme(nxt, allowed_hosts={request.get_host()}):
        return redirect(nxt)

    messages.success(request, "Switched active student.")
    return redirect("home")


@login_required
def refresh_profile(request):
    # Re-read linked students from the backend
    try:
        profile = fetch_profile(request.api_session)
    except BackendAuthError:
        raise
    except BackendError as e:
        logger.warning("Profile refresh failed for user %s: %s", request.user.pk, str(e))
        messages.error(request, "Could not refresh your student profiles. Please try again.")
        profile = None
    if profile:
        request.api_session.update_user({**profile, "role": profile.get("role") or request.user.role})
    return redirect("students:list")
