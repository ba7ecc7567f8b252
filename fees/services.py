import calendar
import logging
import time
from decimal import Decimal

from django.conf import settings
from django.urls import reverse
from django.utils import timezone

from backend_api.client import BackendError
from backend_api.service import (
    create_fee_payment,
    fetch_academic_years,
    fetch_fee_payments,
    fetch_fee_structures,
)
from jobs.tasks import notify_unrecorded_payment
from . import gateway
from .models import UnrecordedPayment
from .reconciliation import compute_balance, validate_payment

logger = logging.getLogger(__name__)

PENDING_CHECKOUTS_KEY = "fees_pending_checkouts"
MAX_PENDING_CHECKOUTS = 10

RECORDED = "recorded"
CANCELLED = "cancelled"
FAILED = "failed"
UNRECORDED = "unrecorded"
UNVERIFIED = "unverified"


def load_fee_context(session, profile):
    structures = fetch_fee_structures(session)
    years = fetch_academic_years(session)
    payments = []
    if profile:
        payments = fetch_fee_payments(session, student_id=profile["id"])
    return {
        "fee_structures": structures,
        "academic_years": years,
        "payments": payments,
    }


def quote(session, profile, term, academic_year_id):
    ctx = load_fee_context(session, profile)
    balance = compute_balance(
        profile, ctx["fee_structures"], ctx["payments"], term, academic_year_id
    )
    return balance, ctx


def _due_date():
    today = timezone.localdate()
    return today.replace(day=calendar.monthrange(today.year, today.month)[1])


def _customer(user):
    name = f"{user.first_name} {user.last_name}".strip()
    return {"email": user.email, "phone": user.phone, "name": name or user.get_username()}


def start_checkout(request, profile, term, academic_year_id, amount=None, remarks=""):
    """Validate a payment and open a gateway checkout for it.

    Raises PaymentRejected before anything is sent to the gateway, and
    GatewayError when the checkout cannot be created. Returns the checkout URL.
    """
    balance, _ = quote(request.api_session, profile, term, academic_year_id)
    charge = validate_payment(balance, amount)
    tx_ref = f"school_fee_{request.user.id}_{int(time.time() * 1000)}"
    term_label = term.capitalize()
    link = gateway.create_checkout(
        tx_ref,
        charge,
        _customer(request.user),
        request.build_absolute_uri(reverse("fees:callback")),
        f"{settings.SCHOOL_NAME} - {term_label} Term Fee",
        f"Payment for {term} term school fees",
    )
    pending = _prune_pending(request.session.get(PENDING_CHECKOUTS_KEY, {}))
    pending[tx_ref] = {
        "created_at": int(time.time()),
        "student_id": profile["id"],
        "fee_structure_id": balance["fee_structure"]["id"],
        "academic_year_id": academic_year_id,
        "term": term,
        "amount": str(charge),
        "total_amount": str(balance["full_fee"]),
        "remarks": remarks or "",
    }
    request.session[PENDING_CHECKOUTS_KEY] = pending
    logger.info(
        "Checkout %s opened for student %s: %s %s (%s term, year %s)",
        tx_ref,
        profile["id"],
        charge,
        settings.PAYMENT_CURRENCY,
        term,
        academic_year_id,
    )
    return link


def _prune_pending(pending):
    """Drop abandoned checkouts; keep at most MAX_PENDING_CHECKOUTS - 1 for the new one."""
    cutoff = time.time() - settings.PENDING_CHECKOUT_MAX_AGE_SECONDS
    fresh = sorted(
        (
            (ref, checkout)
            for ref, checkout in pending.items()
            if checkout.get("created_at", 0) >= cutoff
        ),
        key=lambda item: item[1]["created_at"],
    )
    return dict(fresh[-(MAX_PENDING_CHECKOUTS - 1):])


def _get_pending(request, tx_ref):
    if not tx_ref:
        return None
    return request.session.get(PENDING_CHECKOUTS_KEY, {}).get(tx_ref)


def _drop_pending(request, tx_ref):
    pending = request.session.get(PENDING_CHECKOUTS_KEY, {})
    if pending.pop(tx_ref, None) is not None:
        request.session[PENDING_CHECKOUTS_KEY] = pending


def _outcome(outcome, message, **extra):
    return {"outcome": outcome, "message": message, **extra}


def _contact_admin(transaction_id):
    return (
        "Your payment succeeded but was not recorded. Please contact an "
        f"administrator and quote transaction {transaction_id}."
    )


def complete_checkout(request, status, tx_ref, transaction_id):
    """Handle the payer's return from the gateway.

    Only a verified, successful charge is sent to the backend. A charge the
    backend then fails to record is written to the UnrecordedPayment ledger
    and reported to administrators. When the gateway cannot be reached the
    charge is ledgered too, and the pending quote is kept so the same
    callback can be retried.
    """
    checkout = _get_pending(request, tx_ref)
    status = (status or "").lower()
    if status in ("successful", "completed") and checkout is not None:
        return _settle(request, checkout, tx_ref, transaction_id)
    _drop_pending(request, tx_ref)
    if status == "cancelled":
        return _outcome(CANCELLED, "Payment cancelled.")
    if status not in ("successful", "completed"):
        logger.info("Checkout %s returned with status %r", tx_ref, status)
        return _outcome(FAILED, "Payment was not successful.")
    if checkout is None:
        logger.warning(
            "Gateway callback for unknown checkout %s (transaction %s)",
            tx_ref,
            transaction_id,
        )
        return _outcome(
            FAILED,
            "We could not match this payment to a checkout. If you were "
            "charged, please contact an administrator and quote transaction "
            f"{transaction_id or 'unknown'}.",
        )


def _settle(request, checkout, tx_ref, transaction_id):
    amount = Decimal(checkout["amount"])
    try:
        gateway.verify_transaction(transaction_id, tx_ref, amount)
    except gateway.GatewayUnavailable as e:
        # the payer may have been charged; keep the quote so the callback can be retried
        record = _record_unrecorded(
            request, checkout, tx_ref, transaction_id, e, action="verified"
        )
        return _outcome(
            UNVERIFIED,
            "We could not reach the payment gateway to confirm your payment. "
            "Please try again shortly. If this keeps happening, contact an "
            f"administrator and quote transaction {transaction_id}.",
            unrecorded=record,
        )
    except gateway.GatewayError as e:
        _drop_pending(request, tx_ref)
        logger.error(
            "Could not verify transaction %s for checkout %s: %s",
            transaction_id,
            tx_ref,
            str(e),
        )
        return _outcome(
            FAILED,
            "We could not confirm your payment with the payment gateway. If "
            "you were charged, please contact an administrator and quote "
            f"transaction {transaction_id}.",
        )

    payload = {
        "student": checkout["student_id"],
        "fee_structure": checkout["fee_structure_id"],
        "academic_year": checkout["academic_year_id"],
        "term": checkout["term"],
        "amount_paid": amount,
        "total_amount": Decimal(checkout["total_amount"]),
        "due_date": _due_date().isoformat(),
        "payment_method": "flutterwave",
        "transaction_id": str(transaction_id),
        "remarks": checkout["remarks"] or f"Flutterwave Payment - {transaction_id}",
    }
    _drop_pending(request, tx_ref)
    try:
        create_fee_payment(request.api_session, payload)
    except BackendError as e:
        record = _record_unrecorded(request, checkout, tx_ref, transaction_id, e)
        return _outcome(
            UNRECORDED, _contact_admin(transaction_id), unrecorded=record
        )
    logger.info(
        "Payment %s recorded for student %s (checkout %s)",
        transaction_id,
        checkout["student_id"],
        tx_ref,
    )
    # a retried callback settles an earlier verification outage
    UnrecordedPayment.objects.filter(tx_ref=tx_ref, resolved=False).update(resolved=True)
    return _outcome(RECORDED, "Payment completed successfully!")


def _record_unrecorded(request, checkout, tx_ref, transaction_id, error, action="recorded"):
    logger.error(
        "Payment charged but NOT %s: transaction=%s tx_ref=%s user=%s "
        "student=%s term=%s year=%s amount=%s %s error=%s",
        action,
        transaction_id,
        tx_ref,
        request.user.pk,
        checkout["student_id"],
        checkout["term"],
        checkout["academic_year_id"],
        checkout["amount"],
        settings.PAYMENT_CURRENCY,
        str(error),
    )
    record, _ = UnrecordedPayment.objects.get_or_create(
        tx_ref=tx_ref,
        defaults={
            "user": request.user,
            "student_id": checkout["student_id"],
            "gateway_transaction_id": str(transaction_id),
            "amount": Decimal(checkout["amount"]),
            "total_amount": Decimal(checkout["total_amount"]),
            "currency": settings.PAYMENT_CURRENCY,
            "term": checkout["term"],
            "academic_year_id": checkout["academic_year_id"],
            "fee_structure_id": checkout["fee_structure_id"],
            "error": f"{error} {getattr(error, 'detail', '') or ''}".strip(),
        },
    )
    try:
        notify_unrecorded_payment.delay(record.id)
    except Exception as e:
        logger.error(
            "Could not queue admin notification for unrecorded payment %s: %s",
            record.id,
            str(e),
        )
    return record
