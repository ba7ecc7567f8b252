"""
Fee reconciliation.

Pure functions over records already fetched from the school backend and
normalized by ``backend_api.service``: fee structures, payment records,
academic years and student profiles. Nothing here performs I/O or keeps
state, so every figure can be re-derived on each page load from the current
payment list and fee-structure list.

An unknown fee is always ``None``. Callers must show a placeholder and block
payment rather than substitute a zero or default amount.
"""

import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

logger = logging.getLogger(__name__)

TERMS = ("first", "second", "third")
TERMS_PER_YEAR = len(TERMS)
TUITION = "tuition"
FEE_TYPES = ("tuition", "examination", "transport", "hostel", "other")
PAYMENT_STATUSES = ("paid", "pending", "overdue", "partial")
ZERO = Decimal("0")

_GRADE_PATTERNS = (
    re.compile(r"Grade (\d+)"),
    re.compile(r"^(\d+)"),
    re.compile(r"(\d+)"),
)


class PaymentRejected(Exception):
    FEE_UNKNOWN = "fee_unknown"
    ALREADY_PAID = "already_paid"
    NON_POSITIVE = "non_positive"
    EXCEEDS_BALANCE = "exceeds_balance"

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code
        self.message = message


def resolve_grade(class_label):
    """Grade number from a free-text class label, or None.

    "Grade 10 A" -> 10, "10A" -> 10, "Year 7 Blue" -> 7, "SS two" -> None.
    """
    if not class_label:
        return None
    for pattern in _GRADE_PATTERNS:
        match = pattern.search(class_label)
        if match:
            return int(match.group(1))
    return None


def find_fee_structure(fee_structures, grade, academic_year_id, fee_type=TUITION):
    if grade is None or academic_year_id is None:
        return None
    matches = [
        fs
        for fs in fee_structures
        if fs.get("grade") == grade
        and fs.get("fee_type") == fee_type
        and fs.get("academic_year_id") == academic_year_id
    ]
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(
            "Duplicate %s fee structures for grade %s, academic year %s: ids=%s",
            fee_type,
            grade,
            academic_year_id,
            ",".join(str(fs.get("id")) for fs in matches),
        )
    return matches[0]


def term_transactions(transactions, student_id, term, academic_year_id):
    return [
        t
        for t in transactions
        if t.get("student_id") == student_id
        and t.get("term") == term
        and t.get("academic_year_id") == academic_year_id
    ]


def _sum_paid(transactions):
    return sum((t.get("amount_paid") or ZERO for t in transactions), ZERO)


def compute_balance(profile, fee_structures, transactions, term, academic_year_id):
    """Balance for one (student, term, academic year).

    Returns a plain dict; ``full_fee``, ``remaining`` and ``session_pending``
    are None when the fee cannot be determined.
    """
    profile = profile or {}
    student_id = profile.get("id")
    grade = resolve_grade(profile.get("current_class"))
    fee_structure = find_fee_structure(fee_structures, grade, academic_year_id)
    full_fee = fee_structure["amount"] if fee_structure else None

    existing = term_transactions(transactions, student_id, term, academic_year_id)
    already_paid = _sum_paid(existing)
    year_paid = _sum_paid(
        t
        for t in transactions
        if t.get("student_id") == student_id
        and t.get("academic_year_id") == academic_year_id
    )

    if full_fee is None:
        remaining = None
        session_pending = None
    else:
        remaining = max(full_fee - already_paid, ZERO)
        session_pending = max(full_fee * TERMS_PER_YEAR - year_paid, ZERO)

    return {
        "student_id": student_id,
        "term": term,
        "academic_year_id": academic_year_id,
        "grade": grade,
        "fee_structure": fee_structure,
        "full_fee": full_fee,
        "already_paid": already_paid,
        "remaining": remaining,
        "session_pending": session_pending,
        "is_fully_paid": any(t.get("status") == "paid" for t in existing),
    }


def submit_block_reason(balance):
    """The reason no payment can be made for this term, whatever the amount."""
    if balance.get("full_fee") is None:
        return PaymentRejected(
            PaymentRejected.FEE_UNKNOWN,
            "The fee for this term is not available yet. "
            "Please contact the school office.",
        )
    if balance.get("is_fully_paid"):
        return PaymentRejected(
            PaymentRejected.ALREADY_PAID,
            "This term has already been paid for the selected academic year.",
        )
    return None


def validate_payment(balance, amount=None):
    """Return the amount to charge, or raise PaymentRejected.

    A blank amount means "pay the whole remaining balance".
    """
    blocked = submit_block_reason(balance)
    if blocked is not None:
        raise blocked
    remaining = balance["remaining"]
    if amount is None or amount == "":
        amount = remaining
    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise PaymentRejected(
            PaymentRejected.NON_POSITIVE, "Enter a valid payment amount."
        )
    if not amount.is_finite() or amount <= ZERO:
        raise PaymentRejected(
            PaymentRejected.NON_POSITIVE, "Payment amount must be greater than zero."
        )
    if amount > remaining:
        raise PaymentRejected(
            PaymentRejected.EXCEEDS_BALANCE,
            "You cannot pay more than the remaining balance for this term.",
        )
    return amount


def results_visible(transactions, student_id, term, academic_year_id):
    return any(
        t.get("status") == "paid"
        for t in term_transactions(transactions, student_id, term, academic_year_id)
    )


def paid_terms(transactions, student_id, academic_year_id):
    return {
        term
        for term in TERMS
        if results_visible(transactions, student_id, term, academic_year_id)
    }


def default_academic_year_id(academic_years):
    ids = [y["id"] for y in academic_years if y.get("id") is not None]
    return max(ids) if ids else None


def term_status_grid(transactions, academic_years, student_id, limit=3):
    years = sorted(
        (y for y in academic_years if y.get("id") is not None),
        key=lambda y: y["id"],
        reverse=True,
    )[:limit]
    grid = []
    for year in years:
        paid = paid_terms(transactions, student_id, year["id"])
        grid.append(
            {
                "academic_year": year,
                "terms": [{"term": t, "paid": t in paid} for t in TERMS],
            }
        )
    return grid


def filter_payments(transactions, term=None, academic_year_id=None):
    rows = list(transactions)
    if term:
        rows = [t for t in rows if t.get("term") == term]
    if academic_year_id is not None:
        rows = [t for t in rows if t.get("academic_year_id") == academic_year_id]
    return rows


def group_by_term(transactions):
    groups = {}
    for t in transactions:
        groups.setdefault(t.get("term") or "general", []).append(t)
    return groups


def _term_groups(transactions):
    groups = {}
    for t in transactions:
        key = (t.get("student_id"), t.get("term"), t.get("academic_year_id"))
        groups.setdefault(key, []).append(t)
    return groups.values()


def _outstanding(rows):
    """Unpaid part of one (student, term, year): snapshotted total less all part payments."""
    totals = [t["total_amount"] for t in rows if t.get("total_amount") is not None]
    if not totals:
        return ZERO
    return max(max(totals) - _sum_paid(rows), ZERO)


def payment_summary(transactions):
    groups = list(_term_groups(transactions))
    total_paid = _sum_paid(transactions)
    total_outstanding = sum((_outstanding(rows) for rows in groups), ZERO)
    total_overdue = sum(
        (
            _outstanding(rows)
            for rows in groups
            if any(t.get("status") == "overdue" for t in rows)
        ),
        ZERO,
    )
    pending_due = [
        t["due_date"]
        for t in transactions
        if t.get("status") == "pending" and t.get("due_date")
    ]
    return {
        "total_paid": total_paid,
        "total_outstanding": total_outstanding,
        "total_overdue": total_overdue,
        "next_due_date": min(pending_due) if pending_due else None,
    }


def collection_overview(stats, transactions):
    revenue = stats.get("total_revenue") or ZERO
    pending = stats.get("pending_fees") or ZERO
    expected = revenue + pending
    if expected > ZERO:
        rate = int((revenue * 100 / expected).quantize(Decimal("1"), ROUND_HALF_UP))
    else:
        rate = 0
    status_counts = {status: 0 for status in PAYMENT_STATUSES}
    methods = {}
    for t in transactions:
        status = t.get("status")
        status_counts[status] = status_counts.get(status, 0) + 1
        method = t.get("payment_method") or "Cash"
        methods[method] = methods.get(method, ZERO) + (t.get("amount_paid") or ZERO)
    method_breakdown = [
        {
            "method": method,
            "amount": amount,
            "share": (
                (amount * 100 / revenue).quantize(Decimal("0.1"), ROUND_HALF_UP)
                if revenue > ZERO
                else None
            ),
        }
        for method, amount in sorted(methods.items(), key=lambda kv: -kv[1])
    ]
    return {
        "total_revenue": revenue,
        "pending_fees": pending,
        "total_expected": expected,
        "collection_rate": rate,
        "overdue_amount": payment_summary(transactions)["total_overdue"],
        "status_counts": status_counts,
        "payment_methods": method_breakdown,
    }
