from decimal import Decimal, ROUND_HALF_UP
from django.contrib import messages
from django.contrib.auth.decorators import login_required
from django.shortcuts import render
from backend_api.client import BackendAuthError, BackendError
from backend_api.service import fetch_fee_payments, fetch_results, to_int
from fees.reconciliation import TERMS, results_visible
from students.services import active_student_profile

TERM_ORDER = {t: i for i, t in enumerate(TERMS + ("final",))}


def _fee_term(term):
    # end-of-year results unlock with the last term's fee
    return TERMS[-1] if term == "final" else term


def gated_sections(results, payments, student_id):
    """Results grouped by academic year and term, each with its payment gate."""
    groups = {}
    for r in results:
        key = (r["academic_year_id"], r["term"])
        groups.setdefault(key, []).append(r)
    sections = []
    for (year_id, term), rows in groups.items():
        visible = results_visible(payments, student_id, _fee_term(term), year_id)
        average = None
        if visible and rows:
            total = sum((r["percentage"] for r in rows), Decimal("0"))
            average = (total / len(rows)).quantize(Decimal("0.01"), ROUND_HALF_UP)
        sections.append(
            {
                "academic_year_id": year_id,
                "academic_year": rows[0]["academic_year"],
                "term": term,
                "visible": visible,
                "results": sorted(rows, key=lambda r: r["subject"]) if visible else [],
                "count": len(rows),
                "average": average,
            }
        )
    sections.sort(
        key=lambda s: (-(s["academic_year_id"] or 0), TERM_ORDER.get(s["term"], 99))
    )
    return sections


@login_required
def index(request):
    student = active_student_profile(request)
    ctx = {"active_nav": "results", "student": student, "sections": []}
    if not student:
        return render(request, "results/index.html", ctx)
    try:
        results = fetch_results(request.api_session, student_id=student["id"])
        payments = fetch_fee_payments(request.api_session, student_id=student["id"])
    except BackendAuthError:
        raise
    except BackendError as e:
        messages.error(request, str(e))
        return render(request, "results/index.html", ctx)

    term = request.GET.get("term")
    year_id = to_int(request.GET.get("academic_year"))
    if term:
        results = [r for r in results if r["term"] == term]
    if year_id is not None:
        results = [r for r in results if r["academic_year_id"] == year_id]

    sections = gated_sections(results, payments, student["id"])
    if sections and not any(s["visible"] for s in sections):
        return render(
            request,
            "results/blocked.html",
            {
                "active_nav": "results",
                "student": student,
                "sections": sections,
                "reason": "Outstanding school fees",
            },
        )
    ctx["sections"] = sections
    return render(request, "results/index.html", ctx)
