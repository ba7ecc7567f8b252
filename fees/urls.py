from django.urls import path
from . import api, views

app_name = "fees"

urlpatterns = [
    path("", views.index, name="index"),
    path("pay/", views.pay, name="pay"),
    path("callback/", views.callback, name="callback"),
    path("finance/", views.finance_overview, name="finance"),
    path("api/quote/", api.FeeQuoteView.as_view(), name="api_quote"),
]
