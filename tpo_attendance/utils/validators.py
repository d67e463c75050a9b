"""Validation utilities for the application."""
import re
from dataclasses import dataclass, asdict
from typing import Dict, List, Any

class ValidationError(Exception):
    """Raised when client input fails validation."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))

@dataclass
class StudentInfo:
    """Identity fields a student fills in after verification."""
    student_name: str
    uid: str
    branch: str
    division: str
    batch: str
    room: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

class Validator:
    """Validation helper class."""

    STUDENT_FIELDS = ['student_name', 'uid', 'branch', 'division', 'batch', 'room']

    # Match the attendance_records column sizes
    FIELD_LIMITS = {'uid': 20, 'branch': 100, 'division': 10, 'batch': 10, 'room': 10}

    @staticmethod
    def validate_email(email: str) -> bool:
        """Validate email format."""
        if not email:
            return False
        pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        return bool(re.match(pattern, email))

    @staticmethod
    def validate_name(name: str) -> Dict[str, Any]:
        """Validate student name."""
        errors = []

        if not name or not name.strip():
            errors.append("Name is required")
        elif len(name.strip()) < 2:
            errors.append("Name must be at least 2 characters")
        elif len(name.strip()) > 100:
            errors.append("Name is too long")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: List[str]) -> Dict[str, Any]:
        """Validate required fields in data."""
        errors = []

        for field in required_fields:
            value = data.get(field)
            if value is None or not str(value).strip():
                errors.append(f"{field.replace('_', ' ').title()} is required")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @classmethod
    def parse_student_info(cls, data: Dict) -> StudentInfo:
        """Validate and normalise the student form. Raises ValidationError."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("Student details must be an object")
        result = cls.validate_required_fields(data, cls.STUDENT_FIELDS)
        errors = list(result['errors'])

        name = str(data.get('student_name') or '')
        if name.strip():
            errors.extend(cls.validate_name(name)['errors'])

        for field, limit in cls.FIELD_LIMITS.items():
            if len(str(data.get(field) or '').strip()) > limit:
                label = 'UID' if field == 'uid' else field.title()
                errors.append(f"{label} is too long")

        if errors:
            raise ValidationError(errors)

        return StudentInfo(
            student_name=name.strip(),
            uid=str(data['uid']).strip().upper(),
            branch=str(data['branch']).strip(),
            division=str(data['division']).strip(),
            batch=str(data['batch']).strip(),
            room=str(data['room']).strip()
        )
