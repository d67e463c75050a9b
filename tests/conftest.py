"""Shared fixtures."""
import copy
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from tpo_attendance import create_app, db
from tpo_attendance.models.user import User, UserRole
from tpo_attendance.services.attendance_repository import AttendanceRepository

NATIVE_SOURCE = 'function getCurrentPosition() { [native code] }'

DEVICE = {
    'user_agent': 'Mozilla/5.0 (Linux; Android 14; Pixel 7) Chrome/120.0 Mobile Safari/537.36',
    'language': 'en-IN',
    'platform': 'Linux armv8l',
    'screen': {'width': 412, 'height': 915, 'avail_width': 412, 'avail_height': 915},
    'timezone': 'Asia/Kolkata',
    'cookies_enabled': True,
    'color_depth': 24,
    'device_memory': 8,
    'hardware_concurrency': 8,
    'touch_support': True,
    'webgl': {'available': True, 'vendor': 'Qualcomm', 'renderer': 'Adreno (TM) 730'},
    'canvas': {'available': True, 'data_url': 'data:image/png;base64,' + 'iVBORw0KGgo' * 20 + 'TPOcanvasEND'}
}

CAMPUS = (19.1231, 72.8361)

@pytest.fixture
def app():
    """Create test app."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()

@pytest.fixture
def operator(app):
    user = User(email='tpo@college.edu', name='TPO Coordinator', role=UserRole.ADMIN)
    user.set_password('password123')
    return user.save()

@pytest.fixture
def other_operator(app):
    user = User(email='other@college.edu', name='Other Coordinator', role=UserRole.ADMIN)
    user.set_password('password123')
    return user.save()

@pytest.fixture
def auth_headers(operator):
    token = create_access_token(identity=str(operator.id))
    return {'Authorization': f'Bearer {token}'}

@pytest.fixture
def repository(app):
    return AttendanceRepository()

@pytest.fixture
def make_session(repository, operator):
    """Factory for sessions owned by ``operator``."""
    counter = {'n': 0}

    def _make(code='ABCD2345', token='NETW2345', minutes=60, starts_at=None, geofence=None, name=None):
        counter['n'] += 1
        return repository.create_session(
            name=name or f'Placement Talk {counter["n"]}',
            code=code,
            token=token,
            expires_at=(starts_at or datetime.utcnow()) + timedelta(minutes=minutes),
            creator_id=operator.id,
            starts_at=starts_at,
            geofence=geofence
        )

    return _make

@pytest.fixture
def device_payload():
    return copy.deepcopy(DEVICE)

def jittered_fixes(lat=CAMPUS[0], lng=CAMPUS[1], count=3, accuracy=12.0):
    """Position fixes that wander slightly, like a real receiver."""
    return [
        {'latitude': lat + i * 0.00001, 'longitude': lng - i * 0.00001,
         'accuracy': accuracy + i, 'altitude': 14.0}
        for i in range(count)
    ]

@pytest.fixture
def location_payload():
    def _make(fixes=None, source=NATIVE_SOURCE, supported=True):
        return {
            'supported': supported,
            'fixes': jittered_fixes() if fixes is None else fixes,
            'integrity': {'get_current_position_source': source}
        }
    return _make

@pytest.fixture
def student():
    return {
        'student_name': 'Asha Patil',
        'uid': '2021cs042',
        'branch': 'Computer Engineering',
        'division': 'A',
        'batch': 'A1',
        'room': '304'
    }
