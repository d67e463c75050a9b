"""End-to-end tests for the student verification and submission endpoints."""
import copy
import json

from tpo_attendance.services.geo_math import Geofence

def verify(client, device_payload, location_payload, **overrides):
    body = {
        'session_code': 'ABCD2345',
        'network_token': 'NETW2345',
        'location': location_payload(),
        'device': device_payload,
        'environment': {'outer_width': 412, 'inner_width': 412, 'outer_height': 915, 'inner_height': 860}
    }
    body.update(overrides)
    response = client.post('/api/attendance/verify', json=body)
    assert response.status_code == 200
    return json.loads(response.data)

def submit(client, token, student):
    response = client.post('/api/attendance/submit', json={'verification_token': token, 'student': student})
    return response.status_code, json.loads(response.data)

def test_client_config(client):
    data = json.loads(client.get('/api/attendance/client-config').data)['data']
    assert data['code_length'] == 8
    assert data['location']['sample_count'] == 3
    assert data['location']['maximum_age'] == 0

def test_full_flow_records_attendance(client, make_session, repository, device_payload, location_payload, student):
    session = make_session(geofence=Geofence(19.1231, 72.8361, 200))

    result = verify(client, device_payload, location_payload)
    data = result['data']
    assert result['message'] == 'All verifications passed'
    assert data['ready'] is True
    assert data['phase'] == 'form'
    assert data['devtools_open'] is False
    assert len(data['device_id']) == 8
    assert data['steps']['location']['status'] == 'verified'
    assert data['steps']['device']['first_visit'] is True
    assert 'network_token' not in data['session']

    status, body = submit(client, data['verification_token'], student)
    assert status == 201
    assert body['data']['uid'] == '2021CS042'
    assert body['data']['latitude'] is not None

    records = repository.list_attendance(session.id)
    assert len(records) == 1
    assert records[0].device_fingerprint.upper().startswith(data['device_id'])

def test_device_cookie_is_set_once(client, make_session, device_payload, location_payload):
    make_session()
    response = client.post('/api/attendance/verify', json={
        'session_code': 'ABCD2345', 'network_token': 'NETW2345',
        'location': location_payload(), 'device': device_payload
    })
    assert 'tpo_device=' in response.headers.get('Set-Cookie', '')

    response = client.post('/api/attendance/verify', json={'session_code': 'ABCD2345'})
    assert 'Set-Cookie' not in response.headers

def test_same_device_cannot_submit_twice(client, make_session, device_payload, location_payload, student):
    make_session()
    token = verify(client, device_payload, location_payload)['data']['verification_token']
    assert submit(client, token, student)[0] == 201

    again = verify(client, device_payload, location_payload)
    assert again['data']['phase'] == 'already_submitted'
    assert 'verification_token' not in again['data']
    assert again['message'] == 'You have already recorded attendance for this session'

    status, body = submit(client, token, dict(student, uid='2021CS099', student_name='Proxy Student'))
    assert status == 409
    assert body['message'] == 'You have already recorded attendance for this session'

def test_cleared_cookie_still_blocked_by_database(app, client, make_session, device_payload, location_payload, student):
    make_session()
    token = verify(client, device_payload, location_payload)['data']['verification_token']
    assert submit(client, token, student)[0] == 201

    fresh_client = app.test_client()
    result = verify(fresh_client, device_payload, location_payload)
    assert result['data']['steps']['device']['first_visit'] is True
    assert result['data']['phase'] == 'already_submitted'

def test_static_gps_is_rejected(client, make_session, device_payload, location_payload):
    make_session()
    fixes = [{'latitude': 19.1231, 'longitude': 72.8361, 'accuracy': 5, 'altitude': 3.0}] * 3
    result = verify(client, device_payload, location_payload, location=location_payload(fixes=fixes))

    location = result['data']['steps']['location']
    assert location['status'] == 'failed'
    assert location['reason'].startswith('GPS spoofing detected')
    assert result['data']['steps']['device']['status'] == 'pending'
    assert 'verification_token' not in result['data']

def test_patched_geolocation_api_is_rejected(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload,
                    location=location_payload(source='function(s){s({coords:{}})}'))
    assert result['data']['steps']['location']['status'] == 'failed'
    assert result['message'].startswith('Location spoofing detected')

def test_out_of_range_location(client, make_session, device_payload, location_payload):
    make_session(geofence=Geofence(19.1231, 72.8361, 200))
    far = [{'latitude': 19.2231 + i * 0.00001, 'longitude': 72.8361, 'accuracy': 10, 'altitude': 5.0}
           for i in range(3)]
    result = verify(client, device_payload, location_payload, location=location_payload(fixes=far))
    assert 'You must be within 200m to mark attendance.' in result['message']

def test_permission_denied(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload,
                    location=location_payload(fixes=[{'error': {'code': 1}}]))
    assert result['message'] == 'Location access denied. You must enable location to mark attendance.'

def test_invalid_code_stops_flow(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload, session_code='ZZZZ2222')
    steps = result['data']['steps']
    assert result['message'] == 'Invalid or expired session code'
    assert steps['code']['status'] == 'failed'
    assert steps['network']['status'] == 'pending'
    assert steps['location']['status'] == 'pending'

def test_wrong_network_token(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload, network_token='WRNG2345')
    assert result['message'] == 'Invalid network token'

def test_device_change_on_same_cookie_is_mismatch(client, make_session, device_payload, location_payload):
    make_session()
    verify(client, device_payload, location_payload)

    changed = copy.deepcopy(device_payload)
    changed['screen']['width'] = 1080
    result = verify(client, changed, location_payload)
    assert result['data']['steps']['device']['status'] == 'failed'
    assert result['message'] == 'Device mismatch detected. This may indicate session sharing.'

def test_devtools_flag(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload, key_events=[{'key': 'F12'}])
    assert result['data']['devtools_open'] is True

def test_submit_requires_valid_token(client, make_session, student):
    make_session()
    status, body = submit(client, 'not-a-token', student)
    assert status == 401
    assert body['message'] == 'Invalid verification token'

    status, body = submit(client, None, student)
    assert status == 401
    assert body['message'] == 'Verification token is required'

def test_submit_to_closed_session(client, make_session, repository, device_payload, location_payload, student):
    session = make_session()
    token = verify(client, device_payload, location_payload)['data']['verification_token']
    repository.set_session_active(session.id, False)

    status, _ = submit(client, token, student)
    assert status == 410

def test_submit_with_invalid_student_details(client, make_session, device_payload, location_payload, student):
    make_session()
    token = verify(client, device_payload, location_payload)['data']['verification_token']

    status, body = submit(client, token, dict(student, branch='', uid='X' * 21))
    assert status == 400
    assert 'Branch is required' in body['data']['errors']
    assert 'UID is too long' in body['data']['errors']

    status, _ = submit(client, token, student)
    assert status == 201

def test_verify_rejects_non_object_body(client):
    response = client.post('/api/attendance/verify', json=['ABCD2345', 'NETW2345'])
    assert response.status_code == 400
    assert json.loads(response.data)['message'] == 'Request body must be JSON'

def test_submit_rejects_non_object_body(client):
    response = client.post('/api/attendance/submit', json='token')
    assert response.status_code == 400

def test_numeric_session_code_fails_code_step(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload, session_code=12345678)
    assert result['data']['steps']['code']['status'] == 'failed'
    assert result['data']['steps']['network']['status'] == 'pending'

def test_malformed_signal_sections_fail_their_steps(client, make_session, device_payload, location_payload):
    make_session()
    result = verify(client, device_payload, location_payload, location=['19.1231', '72.8361'])
    assert result['data']['steps']['location']['status'] == 'failed'

    result = verify(client, 'pixel-7', location_payload, environment=[412, 915], key_events='F12')
    steps = result['data']['steps']
    assert steps['location']['status'] == 'verified'
    assert steps['device']['status'] == 'failed'
    assert result['data']['devtools_open'] is False

def test_non_string_canvas_still_verifies_device(client, make_session, device_payload, location_payload):
    make_session()
    device_payload['canvas'] = {'available': True, 'data_url': 12345}
    result = verify(client, device_payload, location_payload)
    assert result['data']['steps']['device']['status'] == 'verified'
    assert 'verification_token' in result['data']

def test_submit_rejects_details_longer_than_columns(client, make_session, device_payload, location_payload, student):
    make_session()
    token = verify(client, device_payload, location_payload)['data']['verification_token']

    status, body = submit(client, token, dict(student, room='Seminar Hall 1', division='D' * 11))
    assert status == 400
    assert 'Room is too long' in body['data']['errors']
    assert 'Division is too long' in body['data']['errors']

    status, _ = submit(client, token, student)
    assert status == 201
