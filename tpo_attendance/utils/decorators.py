"""Custom decorators for authorization."""
from functools import wraps
from flask import g
from flask_jwt_extended import get_jwt_identity
from tpo_attendance.services.auth_service import AuthService
from tpo_attendance.utils.helpers import error_response

def admin_required(f):
    """Decorator to require an active admin. Use below ``@jwt_required()``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = AuthService.get_user_by_id(get_jwt_identity())

        if not user:
            return error_response("User not found", 404)

        if not user.is_active or not user.is_admin():
            return error_response("Admin access required", 403)

        g.current_user = user
        return f(*args, **kwargs)
    return decorated_function
