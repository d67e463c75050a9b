"""Authentication service for session operators."""
from typing import Optional, Tuple
from flask_jwt_extended import create_access_token
from tpo_attendance import db
from tpo_attendance.models.user import User
from tpo_attendance.utils.validators import Validator

class AuthService:
    @staticmethod
    def login(email: str, password: str) -> Tuple[Optional[dict], Optional[str]]:
        """Authenticate user and return an access token."""
        if not email or not password:
            return None, "Email and password are required"

        if not Validator.validate_email(email):
            return None, "Invalid email format"

        user = User.query.filter_by(email=email.lower().strip()).first()

        if not user or not user.check_password(password):
            return None, "Invalid email or password"

        if not user.is_active:
            return None, "Account is deactivated"

        user.touch_login()

        return {
            "access_token": create_access_token(identity=str(user.id)),
            "user": user.to_dict()
        }, None

    @staticmethod
    def get_user_by_id(user_id) -> Optional[User]:
        """Get user by ID."""
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None
