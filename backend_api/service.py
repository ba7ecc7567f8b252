import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.cache import cache
from django.utils.dateparse import parse_date

from .client import api_get, api_post

logger = logging.getLogger(__name__)

FEE_STRUCTURES_CACHE_KEY = "backend:v1:fee_structures"
ACADEMIC_YEARS_CACHE_KEY = "backend:v1:academic_years"
TERMS = ("first", "second", "third")


def to_int(value):
    """Parse an id coming off the wire; None when it is not an integer."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def to_decimal(value, default=None):
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def to_date(value):
    if not value:
        return None
    if hasattr(value, "isoformat") and not isinstance(value, str):
        return value
    try:
        return parse_date(str(value)[:10])
    except ValueError:
        return None


def _rows(payload):
    # DRF list endpoints may or may not be paginated
    if isinstance(payload, dict):
        payload = payload.get("results", [])
    return [row for row in (payload or []) if isinstance(row, dict)]


def _ref(value):
    """Split a foreign key that may be a bare id or a nested {id, name}."""
    if isinstance(value, dict):
        return to_int(value.get("id")), value.get("name") or ""
    return to_int(value), ""


def _term(value):
    term = (value or "").strip().lower() if isinstance(value, str) else ""
    return term if term in TERMS else None


def normalize_fee_structure(row):
    year_id, year_name = _ref(row.get("academic_year"))
    if year_id is None:
        year_id = to_int(row.get("academic_year_id"))
    return {
        "id": to_int(row.get("id")),
        "academic_year_id": year_id,
        "academic_year": row.get("academic_year_name") or year_name,
        "grade": to_int(row.get("grade")),
        "fee_type": (row.get("fee_type") or "").lower(),
        "amount": to_decimal(row.get("amount"), Decimal("0")),
        "description": row.get("description") or "",
    }


def normalize_fee_payment(row):
    year_id, year_name = _ref(row.get("academic_year"))
    student_id, student_name = _ref(row.get("student"))
    fee_structure_id, _ = _ref(row.get("fee_structure"))
    return {
        "id": to_int(row.get("id")),
        "student_id": student_id,
        "student_name": row.get("student_name") or student_name,
        "fee_structure_id": fee_structure_id,
        "fee_structure_name": row.get("fee_structure_name") or "",
        "academic_year_id": year_id,
        "academic_year": row.get("academic_year_name") or year_name,
        "term": _term(row.get("term")),
        "amount_paid": to_decimal(row.get("amount_paid"), Decimal("0")),
        "total_amount": to_decimal(row.get("total_amount")),
        "status": (row.get("status") or "pending").lower(),
        "payment_date": to_date(row.get("payment_date")),
        "due_date": to_date(row.get("due_date")),
        "payment_method": row.get("payment_method") or "",
        "transaction_id": row.get("transaction_id") or "",
        "remarks": row.get("remarks") or "",
    }


def normalize_academic_year(row):
    return {"id": to_int(row.get("id")), "name": row.get("name") or ""}


def normalize_result(row):
    year_id, year_name = _ref(row.get("academic_year"))
    subject_id, subject_name = _ref(row.get("subject"))
    return {
        "id": to_int(row.get("id")),
        "student_id": _ref(row.get("student"))[0],
        "subject_id": subject_id,
        "subject": row.get("subject_name") or subject_name,
        "term": (row.get("term") or "").lower(),
        "academic_year_id": year_id,
        "academic_year": row.get("academic_year_name") or year_name,
        "ca_total": to_decimal(row.get("ca_total"), Decimal("0")),
        "exam_score": to_decimal(row.get("exam_score"), Decimal("0")),
        "marks_obtained": to_decimal(row.get("marks_obtained"), Decimal("0")),
        "total_marks": to_decimal(row.get("total_marks"), Decimal("100")),
        "percentage": to_decimal(row.get("percentage"), Decimal("0")),
        "grade": row.get("grade") or "",
        "remarks": row.get("remarks") or "",
    }


def _display_name(details):
    if not isinstance(details, dict):
        return ""
    name = details.get("full_name") or ""
    if not name:
        name = f"{details.get('first_name') or ''} {details.get('last_name') or ''}"
    return name.strip()


def normalize_student_profile(profile, user=None):
    label = profile.get("current_class_name") or profile.get("current_class")
    if not isinstance(label, str):
        label = ""
    year_id = to_int(profile.get("class_academic_year_id"))
    if year_id is None:
        year_id, _ = _ref(profile.get("class_academic_year"))
    name = _display_name(profile.get("user_details")) or _display_name(user)
    return {
        "id": to_int(profile.get("id")),
        "student_number": profile.get("student_id") or "",
        "current_class": label.strip(),
        "academic_year_id": year_id,
        "name": name,
    }


def student_profiles_from_user(user):
    """Student profiles visible to a backend user payload.

    Students see their own profile; parents see their linked children.
    Other roles have none.
    """
    if not isinstance(user, dict):
        return []
    role = user.get("role")
    profile = user.get("profile") or {}
    if role == "parent":
        children = profile.get("children_details") or profile.get("children") or []
        profiles = [
            normalize_student_profile(c) for c in children if isinstance(c, dict)
        ]
    elif role == "student":
        profiles = [normalize_student_profile(profile, user)]
    else:
        profiles = []
    return [p for p in profiles if p["id"] is not None]


def login(username: str, password: str):
    return api_post(
        "auth/login/", {"username": username, "password": password}
    )


def fetch_profile(session):
    return api_get("users/profile/", token=session.token)


def fetch_fee_structures(session):
    cached = cache.get(FEE_STRUCTURES_CACHE_KEY)
    if cached is not None:
        return cached
    rows = _rows(api_get("fee-structures/", token=session.token))
    structures = [normalize_fee_structure(r) for r in rows]
    cache.set(
        FEE_STRUCTURES_CACHE_KEY, structures, settings.REFERENCE_DATA_CACHE_SECONDS
    )
    return structures


def fetch_academic_years(session):
    cached = cache.get(ACADEMIC_YEARS_CACHE_KEY)
    if cached is not None:
        return cached
    rows = _rows(api_get("academic-years/", token=session.token))
    years = [normalize_academic_year(r) for r in rows]
    years = [y for y in years if y["id"] is not None]
    cache.set(
        ACADEMIC_YEARS_CACHE_KEY, years, settings.REFERENCE_DATA_CACHE_SECONDS
    )
    return years


def fetch_fee_payments(session, student_id=None):
    rows = _rows(api_get("fee-payments/", token=session.token))
    payments = [normalize_fee_payment(r) for r in rows]
    if student_id is not None:
        payments = [p for p in payments if p["student_id"] == student_id]
    return payments


def fetch_results(session, student_id=None):
    rows = _rows(api_get("results/", token=session.token))
    results = [normalize_result(r) for r in rows]
    if student_id is not None:
        results = [r for r in results if r["student_id"] == student_id]
    return results


def fetch_dashboard_stats(session):
    data = api_get("dashboard/stats/", token=session.token) or {}
    return {
        "total_revenue": to_decimal(data.get("totalRevenue"), Decimal("0")),
        "pending_fees": to_decimal(data.get("pendingFees"), Decimal("0")),
        "total_students": to_int(data.get("totalStudents")),
    }


def create_fee_payment(session, payload: dict):
    """Record a payment. The backend computes the status from the cumulative total."""
    body = {k: v for k, v in payload.items() if k != "status"}
    for key in ("amount_paid", "total_amount"):
        if isinstance(body.get(key), Decimal):
            body[key] = str(body[key])
    return api_post("fee-payments/", body, token=session.token)
