from functools import wraps

from flask import abort, g
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from entitlements.extensions import db
from entitlements.models import User


def current_account() -> User:
    user = db.session.get(User, get_jwt_identity())
    if user is None:
        abort(401, "Account no longer exists")
    return user


def account_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        g.account = current_account()
        return fn(*args, **kwargs)

    return wrapper


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        user = current_account()
        if not user.is_admin:
            abort(403, "Admin access required")
        g.account = user
        return fn(*args, **kwargs)

    return wrapper
