from __future__ import annotations

from flask import g, request

from app.errors import PermissionDenied, Unauthorized
from app.extensions import db
from app.models import User, Vendor
from app.utils.jwt_utils import decode_token, get_bearer_token


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    u = db.session.get(User, uid)
    if u is not None:
        g.auth_user_id = int(u.id)
        g.auth_role = role_of(u)
    return u


def role_of(u: User | None) -> str:
    if not u:
        return "guest"
    return (getattr(u, "role", None) or "buyer").strip().lower()


def require_user(*roles: str) -> User:
    u = current_user()
    if u is None:
        raise Unauthorized("authentication required")
    if roles and role_of(u) not in roles:
        raise PermissionDenied(f"{' or '.join(roles)} role required")
    return u


def vendor_for(u: User) -> Vendor:
    vendor = Vendor.query.filter_by(user_id=int(u.id)).first()
    if vendor is None:
        raise PermissionDenied("no vendor profile for this account")
    return vendor
