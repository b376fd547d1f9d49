import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .errors import AuthError
from .models import MAX_ROW_ID

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")


@dataclass(frozen=True)
class AuthContext:
    user_id: Optional[int] = None
    is_admin: bool = False


def _admin_token(request: Request) -> Optional[str]:
    header_token = request.headers.get("X-Admin-Token")
    if header_token:
        return header_token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Admin "):
        return auth_header[6:].strip()
    return None


def get_auth_context(request: Request) -> AuthContext:
    """
    The gateway verifies the caller's token and forwards the user id in
    X-User. Admins present ADMIN_TOKEN instead. Whether an anonymous context
    is acceptable is decided by the caller of this dependency.
    """
    token = _admin_token(request)
    if ADMIN_TOKEN and token and hmac.compare_digest(token, ADMIN_TOKEN):
        return AuthContext(user_id=None, is_admin=True)

    user = request.headers.get("X-User")
    if not user:
        return AuthContext()
    try:
        user_id = int(user)
    except ValueError:
        raise AuthError("Token invalido")
    if user_id <= 0 or user_id > MAX_ROW_ID:
        raise AuthError("Token invalido")
    return AuthContext(user_id=user_id, is_admin=False)
