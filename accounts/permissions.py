from rest_framework import permissions


class IsProvider(permissions.BasePermission):
    """
    Allows access only to authenticated users with the 'PROVIDER' role
    (or staff, who may act on any provider's calendar).
    """

    def has_permission(self, request, view):
        return bool(
            request.user
            and request.user.is_authenticated
            and (request.user.role == "PROVIDER" or request.user.is_staff)
        )


class IsClient(permissions.BasePermission):
    """
    Allows access only to authenticated users with the 'CLIENT' role.
    """

    def has_permission(self, request, view):
        return bool(
            request.user
            and request.user.is_authenticated
            and request.user.role == "CLIENT"
        )


def can_manage_provider(user, provider):
    """True if ``user`` owns ``provider``'s calendar or is staff."""
    if not user or not user.is_authenticated:
        return False
    return user.is_staff or provider.user_id == user.id
