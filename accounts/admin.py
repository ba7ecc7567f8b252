from django.contrib import admin
from .models import User

@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ("id", "username", "email", "role", "external_user_id", "is_active", "last_validated_at")
    list_filter = ("role", "is_active")
    search_fields = ("username", "email", "external_user_id")
