# events/permissions.py
from django.contrib.auth.decorators import user_passes_test


def is_admin(u): return u.is_active and u.is_staff


def admin_required(view):
    """Staff only; everyone else is sent to the admin login."""
    return user_passes_test(is_admin, login_url="admin:login")(view)
