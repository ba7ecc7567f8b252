from django.contrib import admin
from django.urls import include, path
from accounts import views as accounts_views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("django-rq/", include("django_rq.urls")),
    path("accounts/", include("accounts.urls")),
    path("", accounts_views.home, name="home"),
    # portal sections
    path("fees/", include("fees.urls")),
    path("results/", include("results.urls")),
    # students list/switch
    path("", include("students.urls")),
]
