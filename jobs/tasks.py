import logging
from anymail.message import AnymailMessage
from django_rq import job
from django.utils import timezone
from django.conf import settings

logger = logging.getLogger(__name__)


@job("mail")
def notify_unrecorded_payment(unrecorded_id: int):
    from fees.models import UnrecordedPayment
    record = UnrecordedPayment.objects.select_related("user").get(pk=unrecorded_id)
    if record.notified_at or record.resolved:
        return
    recipients = [email for _, email in settings.ADMINS]
    if not recipients:
        logger.warning(
            "No ADMIN_EMAILS configured; unrecorded payment %s not emailed",
            record.gateway_transaction_id,
        )
        return
    user = record.user
    payer = user.get_username() if user else "unknown user"
    subject = f"Unrecorded fee payment {record.gateway_transaction_id}"
    body = (
        "A payment may have been charged by the payment gateway but the school "
        "backend has not recorded it. Reconcile it manually.\n\n"
        f"Gateway transaction: {record.gateway_transaction_id}\n"
        f"Reference: {record.tx_ref}\n"
        f"Payer: {payer}\n"
        f"Student profile: {record.student_id}\n"
        f"Term: {record.term} / academic year {record.academic_year_id}\n"
        f"Fee structure: {record.fee_structure_id}\n"
        f"Amount: {record.amount} {record.currency} "
        f"(term fee {record.total_amount})\n"
        f"Error: {record.error}\n"
        f"Admin: {settings.SITE_URL}/admin/fees/unrecordedpayment/{record.id}/change/\n"
    )
    msg = AnymailMessage(subject=subject, body=body, to=recipients)
    msg.metadata = {"unrecorded_payment_id": record.id}
    msg.tags = ["unrecorded-payment"]
    msg.send()
    record.notified_at = timezone.now()
    record.save(update_fields=["notified_at"])
