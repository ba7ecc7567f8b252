from decimal import Decimal
from django import template
from django.conf import settings

register = template.Library()


@register.filter
def money(value):
    """Format an amount in the payment currency; "—" when it is unknown."""
    if value is None or value == "":
        return "—"
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        return "—"
    return f"{settings.CURRENCY_SYMBOL}{amount:,.2f}"


@register.simple_tag
def currency_symbol():
    return settings.CURRENCY_SYMBOL
