from django.contrib.auth import logout
from rest_framework import exceptions, permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from backend_api.client import BackendAuthError, BackendError
from backend_api.service import to_int
from students.services import active_student_profile
from .reconciliation import TERMS, PaymentRejected, submit_block_reason, validate_payment
from .services import quote


def _money(value):
    return None if value is None else str(value)


class BackendUnavailable(exceptions.APIException):
    status_code = 502
    default_detail = "The school server could not be reached."
    default_code = "backend_unavailable"


class SessionExpired(exceptions.APIException):
    status_code = 401
    default_detail = "Your session has expired. Please log in again."
    default_code = "session_expired"


class FeeQuoteView(APIView):
    """Balance for one term of the active student, for live form updates."""

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        term = request.query_params.get("term")
        if term not in TERMS:
            raise exceptions.ValidationError({"term": f"Must be one of {', '.join(TERMS)}."})
        academic_year_id = to_int(request.query_params.get("academic_year"))
        if academic_year_id is None:
            raise exceptions.ValidationError({"academic_year": "A numeric academic year id is required."})
        student = active_student_profile(request)
        if not student:
            raise exceptions.NotFound("No student profile is linked to this account.")
        try:
            balance, _ = quote(request.api_session, student, term, academic_year_id)
        except BackendAuthError:
            request.api_session.clear()
            logout(request._request)
            raise SessionExpired()
        except BackendError as e:
            raise BackendUnavailable(str(e))

        blocked = submit_block_reason(balance)
        data = {
            "student_id": student["id"],
            "term": term,
            "academic_year": academic_year_id,
            "grade": balance["grade"],
            "full_fee": _money(balance["full_fee"]),
            "already_paid": _money(balance["already_paid"]),
            "remaining": _money(balance["remaining"]),
            "session_pending": _money(balance["session_pending"]),
            "is_fully_paid": balance["is_fully_paid"],
            "can_submit": blocked is None,
            "block_reason": blocked.code if blocked else None,
            "block_message": blocked.message if blocked else None,
        }
        amount = request.query_params.get("amount")
        if amount is not None:
            try:
                data["amount"] = str(validate_payment(balance, amount))
                data["amount_error"] = None
            except PaymentRejected as e:
                data["amount"] = amount
                data["amount_error"] = e.code
                data["amount_message"] = e.message
        return Response(data)
