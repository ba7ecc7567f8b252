import logging
from django.contrib import messages
from django.contrib.auth import authenticate, login, logout
from django.contrib.auth.decorators import login_required
from django.shortcuts import redirect, render
from django.urls import reverse
from django.utils.http import url_has_allowed_host_and_scheme
from django.views.decorators.http import require_POST
from backend_api.client import BackendAuthError, BackendError
from backend_api.service import fetch_profile
from fees.reconciliation import (
    compute_balance,
    default_academic_year_id,
    paid_terms,
    term_status_grid,
)
from fees.services import load_fee_context
from students.services import active_student_profile
from .forms import LoginForm

logger = logging.getLogger(__name__)


def _safe_next(request, default):
    nxt = request.POST.get("next") or request.GET.get("next")
    if nxt and url_has_allowed_host_and_scheme(
        nxt, allowed_hosts={request.get_host()}, require_https=request.is_secure()
    ):
        return nxt
    return default


def login_view(request):
    if request.user.is_authenticated and request.api_session.is_active:
        return redirect("home")
    form = LoginForm(request.POST or None)
    if request.method == "POST" and form.is_valid():
        user = authenticate(
            request,
            username=form.cleaned_data["username"],
            password=form.cleaned_data["password"],
        )
        backend_login = getattr(user, "backend_login", None)
        if user is None or backend_login is None:
            form.add_error(None, "Unable to sign in with that username and password.")
        else:
            login(request, user)
            request.api_session.start(backend_login["access"], backend_login["user"])
            try:
                profile = fetch_profile(request.api_session)
            except BackendError as e:
                logger.warning("Profile fetch after login failed for %s: %s", user.pk, str(e))
                profile = None
            if profile:
                request.api_session.update_user(
                    {**profile, "role": profile.get("role") or user.role}
                )
            return redirect(_safe_next(request, reverse("home")))
    return render(
        request,
        "accounts/login.html",
        {"form": form, "next": request.GET.get("next", "")},
    )


@require_POST
def logout_view(request):
    request.api_session.clear()
    logout(request)
    return redirect("accounts:login")


@login_required
def home(request):
    name = request.user.get_full_name() or request.user.get_username()
    ctx = {"name": name, "active_nav": "dashboard", "role": request.user.role}
    if not request.user.has_student_fees:
        return render(request, "home.html", ctx)
    student = active_student_profile(request)
    ctx["student"] = student
    if not student:
        return render(request, "home.html", ctx)
    try:
        fee_ctx = load_fee_context(request.api_session, student)
    except BackendAuthError:
        raise
    except BackendError as e:
        messages.error(request, str(e))
        return render(request, "home.html", ctx)
    year_id = default_academic_year_id(fee_ctx["academic_years"])
    if year_id is not None:
        # session pending is the same for every term; any term gives it
        balance = compute_balance(
            student, fee_ctx["fee_structures"], fee_ctx["payments"], "first", year_id
        )
        ctx.update(
            {
                "grid": term_status_grid(
                    fee_ctx["payments"], fee_ctx["academic_years"], student["id"], limit=1
                ),
                "session_pending": balance["session_pending"],
                "has_result_access": "first"
                in paid_terms(fee_ctx["payments"], student["id"], year_id),
            }
        )
    return render(request, "home.html", ctx)
