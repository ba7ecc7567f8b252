from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Local shadow of a school backend account.

    Passwords live on the backend; local rows get an unusable password.
    """
    ROLE_CHOICES = [
        ("admin", "Admin"),
        ("management", "Management"),
        ("staff", "Staff"),
        ("student", "Student"),
        ("parent", "Parent"),
    ]
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default="student")
    external_user_id = models.CharField(max_length=64, unique=True, blank=True, null=True)
    phone = models.CharField(max_length=32, blank=True)
    last_validated_at = models.DateTimeField(blank=True, null=True)

    @property
    def has_student_fees(self):
        return self.role in ("student", "parent")
