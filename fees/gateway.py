import logging
from decimal import Decimal, InvalidOperation

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    pass


class GatewayUnavailable(GatewayError):
    """No definitive answer: transport failure or a gateway-side 5xx."""


def _url(path):
    return f"{settings.FLUTTERWAVE_API_URL.rstrip('/')}/{path.lstrip('/')}"


def _headers():
    if not settings.FLUTTERWAVE_SECRET_KEY:
        logger.error("Flutterwave secret key is not configured")
        raise GatewayError("The payment gateway is not configured")
    return {
        "Authorization": f"Bearer {settings.FLUTTERWAVE_SECRET_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _json(r, action):
    try:
        data = r.json()
    except ValueError:
        data = {}
    if not r.ok or data.get("status") != "success":
        logger.error(
            "Flutterwave %s failed: %s %s", action, r.status_code, (r.text or "")[:500]
        )
        if r.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway error ({r.status_code})")
        raise GatewayError(data.get("message") or f"Payment gateway error ({r.status_code})")
    return data.get("data") or {}


def create_checkout(tx_ref, amount, customer, redirect_url, title, description):
    """Start a hosted checkout and return the URL to send the payer to."""
    payload = {
        "tx_ref": tx_ref,
        "amount": str(amount),
        "currency": settings.PAYMENT_CURRENCY,
        "redirect_url": redirect_url,
        "payment_options": "card,mobilemoney,ussd",
        "customer": {
            "email": customer.get("email") or "",
            "phonenumber": customer.get("phone") or "",
            "name": customer.get("name") or "",
        },
        "customizations": {
            "title": title,
            "description": description,
            "logo": settings.SCHOOL_LOGO_URL,
        },
    }
    try:
        r = requests.post(
            _url("payments"), headers=_headers(), json=payload, timeout=20
        )
    except requests.RequestException as e:
        logger.error("Flutterwave checkout %s failed: %s", tx_ref, str(e))
        raise GatewayError("The payment gateway could not be reached") from e
    link = _json(r, "checkout").get("link")
    if not link:
        raise GatewayError("The payment gateway did not return a checkout link")
    return link


def verify_transaction(transaction_id, tx_ref, amount):
    """Confirm with the gateway that ``transaction_id`` really charged ``amount``."""
    if not transaction_id:
        raise GatewayError("Missing gateway transaction id")
    try:
        r = requests.get(
            _url(f"transactions/{transaction_id}/verify"),
            headers=_headers(),
            timeout=20,
        )
    except requests.RequestException as e:
        logger.error("Flutterwave verify %s failed: %s", transaction_id, str(e))
        raise GatewayUnavailable("The payment gateway could not be reached") from e
    data = _json(r, "verify")
    try:
        charged = Decimal(str(data.get("amount")))
    except (InvalidOperation, ValueError):
        charged = None
    problems = []
    if data.get("status") != "successful":
        problems.append(f"status={data.get('status')}")
    if data.get("tx_ref") != tx_ref:
        problems.append(f"tx_ref={data.get('tx_ref')}")
    if charged is None or charged != Decimal(str(amount)):
        problems.append(f"amount={data.get('amount')}")
    if data.get("currency") != settings.PAYMENT_CURRENCY:
        problems.append(f"currency={data.get('currency')}")
    if problems:
        logger.error(
            "Flutterwave transaction %s (%s) did not verify: %s",
            transaction_id,
            tx_ref,
            ", ".join(problems),
        )
        raise GatewayError("The payment could not be verified")
    return data
