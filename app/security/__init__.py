"""Identity and role primitives shared by the ticket engine and the API."""

from .roles import ADMIN_ROLES, ROLE_RANKS, Actor, Role

__all__ = [
    "ADMIN_ROLES",
    "ROLE_RANKS",
    "Actor",
    "Role",
]
