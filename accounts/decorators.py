from functools import wraps
from django.contrib.auth.views import redirect_to_login
from django.http import HttpResponseForbidden


def role_required(*roles):
    """
    Decorator to guard views by the backend role of the signed-in user.
    Superusers pass regardless of role.
    """
    def decorator(view_func):
        @wraps(view_func)
        def _wrapped(request, *args, **kwargs):
            user = request.user
            if not user.is_authenticated:
                return redirect_to_login(request.get_full_path())
            if not user.is_superuser and user.role not in roles:
                return HttpResponseForbidden("Not authorized")
            return view_func(request, *args, **kwargs)
        return _wrapped
    return decorator
