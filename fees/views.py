import logging
from datetime import date

from django.contrib import messages
from django.contrib.auth.decorators import login_required
from django.shortcuts import redirect, render

from accounts.decorators import role_required
from backend_api.client import BackendAuthError, BackendError
from backend_api.service import fetch_dashboard_stats, fetch_fee_payments, to_int
from students.services import active_student_profile
from .forms import PaymentForm
from .gateway import GatewayError
from .models import UnrecordedPayment
from .reconciliation import (
    TERMS,
    PaymentRejected,
    collection_overview,
    compute_balance,
    default_academic_year_id,
    filter_payments,
    group_by_term,
    paid_terms,
    payment_summary,
    submit_block_reason,
    term_status_grid,
)
from .services import (
    CANCELLED,
    RECORDED,
    UNRECORDED,
    UNVERIFIED,
    complete_checkout,
    load_fee_context,
    start_checkout,
)

logger = logging.getLogger(__name__)

AMOUNT_ERRORS = (PaymentRejected.NON_POSITIVE, PaymentRejected.EXCEEDS_BALANCE)


def _selected_year(value, academic_years):
    year_id = to_int(value)
    if any(y["id"] == year_id for y in academic_years):
        return year_id
    return default_academic_year_id(academic_years)


@login_required
def index(request):
    student = active_student_profile(request)
    ctx = {"active_nav": "fees", "student": student, "terms": TERMS}
    if not student:
        return render(request, "fees/index.html", ctx)
    try:
        fee_ctx = load_fee_context(request.api_session, student)
    except BackendAuthError:
        raise
    except BackendError as e:
        messages.error(request, str(e))
        return render(request, "fees/index.html", ctx)

    payments = fee_ctx["payments"]
    term = request.GET.get("term")
    term = term if term in TERMS else None
    year_id = to_int(request.GET.get("academic_year"))
    filtered = filter_payments(payments, term, year_id)
    years_in_use = {p["academic_year_id"]: p["academic_year"] for p in payments if p["academic_year_id"] is not None}
    ctx.update(
        {
            "grid": term_status_grid(payments, fee_ctx["academic_years"], student["id"]),
            "summary": payment_summary(filtered),
            "groups": group_by_term(filtered),
            "filter_years": sorted(years_in_use.items(), reverse=True),
            "selected_term": term,
            "selected_year": year_id,
        }
    )
    return render(request, "fees/index.html", ctx)


@login_required
def pay(request):
    student = active_student_profile(request)
    if not student:
        messages.error(request, "No student profile is linked to your account.")
        return redirect("fees:index")
    try:
        fee_ctx = load_fee_context(request.api_session, student)
    except BackendAuthError:
        raise
    except BackendError as e:
        messages.error(request, str(e))
        return redirect("fees:index")

    years = fee_ctx["academic_years"]
    source = request.POST if request.method == "POST" else request.GET
    term = source.get("term") if source.get("term") in TERMS else TERMS[0]
    year_id = _selected_year(source.get("academic_year"), years)
    paid = paid_terms(fee_ctx["payments"], student["id"], year_id)

    if request.method == "POST":
        form = PaymentForm(request.POST, academic_years=years, paid=paid)
        if form.is_valid():
            cd = form.cleaned_data
            try:
                link = start_checkout(
                    request,
                    student,
                    cd["term"],
                    cd["academic_year"],
                    amount=cd["amount"],
                    remarks=cd["remarks"],
                )
            except PaymentRejected as e:
                form.add_error("amount" if e.code in AMOUNT_ERRORS else None, e.message)
            except GatewayError as e:
                messages.error(request, f"Payment could not be started: {e}")
            else:
                return redirect(link)
    else:
        form = PaymentForm(
            initial={"term": term, "academic_year": year_id},
            academic_years=years,
            paid=paid,
        )

    balance = compute_balance(
        student, fee_ctx["fee_structures"], fee_ctx["payments"], term, year_id
    )
    blocked = submit_block_reason(balance)
    return render(
        request,
        "fees/pay.html",
        {
            "active_nav": "fees",
            "student": student,
            "form": form,
            "balance": balance,
            "term": term,
            "can_submit": blocked is None,
            "block_reason": blocked.message if blocked else None,
        },
    )


@login_required
def callback(request):
    result = complete_checkout(
        request,
        request.GET.get("status"),
        request.GET.get("tx_ref"),
        request.GET.get("transaction_id"),
    )
    outcome = result["outcome"]
    if outcome in (UNRECORDED, UNVERIFIED):
        return render(
            request,
            "fees/payment_unrecorded.html",
            {
                "active_nav": "fees",
                "message": result["message"],
                "record": result["unrecorded"],
                "retry_url": request.get_full_path() if outcome == UNVERIFIED else None,
            },
        )
    if outcome == RECORDED:
        messages.success(request, result["message"])
    elif outcome == CANCELLED:
        messages.info(request, result["message"])
    else:
        messages.error(request, result["message"])
    return redirect("fees:index")


@role_required("management", "admin")
def finance_overview(request):
    ctx = {"active_nav": "finance", "overview": None}
    try:
        stats = fetch_dashboard_stats(request.api_session)
        payments = fetch_fee_payments(request.api_session)
    except BackendAuthError:
        raise
    except BackendError as e:
        messages.error(request, "Failed to load financial data: " + str(e))
        return render(request, "fees/finance.html", ctx)
    recent = sorted(
        payments,
        key=lambda p: (p["payment_date"] or date.min, p["id"] or 0),
        reverse=True,
    )
    ctx.update(
        {
            "overview": collection_overview(stats, payments),
            "recent": recent[:10],
            "pending": [p for p in payments if p["status"] == "pending"][:10],
            "overdue": [p for p in payments if p["status"] == "overdue"][:10],
            "unrecorded_count": UnrecordedPayment.objects.filter(resolved=False).count(),
        }
    )
    return render(request, "fees/finance.html", ctx)
