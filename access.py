"""Session-backed identity and role checks."""

from dataclasses import dataclass
from functools import wraps
import logging

from flask import session, g
from passlib.context import CryptContext

from errors import Unauthorized
from models import UserRole

logger = logging.getLogger(__name__)

# pbkdf2_sha256 avoids bcrypt's native build and 72-byte password limit
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

SESSION_USER_KEY = "user_id"
SESSION_ROLE_KEY = "role"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


@dataclass(frozen=True)
class Identity:
    """The caller on whose behalf a store operation runs."""
    user_id: str
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def can_manage_reservation(identity: Identity, reservation) -> bool:
    return identity.is_admin or reservation.user_id == identity.user_id


def login_user(user):
    session.clear()
    session[SESSION_USER_KEY] = user.id
    session[SESSION_ROLE_KEY] = user.role.value


def logout_user():
    session.clear()


def current_identity():
    user_id = session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    try:
        role = UserRole(session.get(SESSION_ROLE_KEY, UserRole.USER.value))
    except ValueError:
        logger.warning("Session carried unknown role for user_id=%s", user_id)
        return None
    return Identity(user_id=user_id, role=role)


def login_required(view):
    """Reject anonymous callers and expose the identity as ``g.identity``."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = current_identity()
        if identity is None:
            raise Unauthorized("Unauthorized")
        g.identity = identity
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        identity = current_identity()
        if identity is None or not identity.is_admin:
            logger.warning(
                "Admin route refused (user_id=%s)",
                identity.user_id if identity else None,
            )
            raise Unauthorized("Admin access required")
        g.identity = identity
        return view(*args, **kwargs)
    return wrapped
