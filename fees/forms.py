from django import forms
from .reconciliation import TERMS


def term_choices(paid=()):
    return [
        (t, f"{t.capitalize()} Term" + (" (Already Paid)" if t in paid else ""))
        for t in TERMS
    ]


class TermSelect(forms.Select):
    """Select that greys out terms already paid for the chosen year."""

    paid = frozenset()

    def create_option(self, name, value, *args, **kwargs):
        option = super().create_option(name, value, *args, **kwargs)
        if value in self.paid:
            option["attrs"]["disabled"] = True
        return option


class PaymentForm(forms.Form):
    term = forms.ChoiceField(choices=term_choices(), widget=TermSelect)
    academic_year = forms.TypedChoiceField(coerce=int, choices=())
    amount = forms.DecimalField(
        required=False,
        max_digits=12,
        decimal_places=2,
        help_text="Leave blank to pay the full remaining balance.",
    )
    remarks = forms.CharField(required=False, max_length=500, widget=forms.Textarea(attrs={"rows": 3}))

    def __init__(self, *args, academic_years=(), paid=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["academic_year"].choices = [
            (y["id"], y["name"] or str(y["id"])) for y in academic_years
        ]
        self.fields["term"].choices = term_choices(paid)
        self.fields["term"].widget.paid = frozenset(paid)
