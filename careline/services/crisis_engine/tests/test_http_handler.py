"""Tests for Crisis Engine HTTP handler."""
import json
import pytest
from unittest.mock import patch

from careline.shared.utils import configure_pii_salt


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def client():
    from careline.services.crisis_engine.http_handler import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


def _create_high_alert(client):
    response = client.post(
        '/alerts',
        json={
            'user_id': 'user_http',
            'alert_type': 'manual_escalation',
            'severity': 'high',
            'description': 'Therapist raised a concern',
        },
    )
    assert response.status_code == 201
    return json.loads(response.data)


class TestHealthEndpoint:
    def test_health_returns_200(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'crisis-engine'

    def test_ready(self, client):
        response = client.get('/ready')
        assert response.status_code == 200
        assert json.loads(response.data)['status'] == 'ready'

    def test_not_ready_when_check_fails(self, client):
        from careline.services.crisis_engine import http_handler
        with patch.object(http_handler.engine, 'readiness', return_value={'database': False}):
            response = client.get('/ready')
        assert response.status_code == 503


class TestAnalyzeEndpoint:
    def test_critical_message_opens_alert(self, client):
        response = client.post(
            '/analyze',
            json={
                'message_id': 'msg_http_1',
                'content': 'I want to kill myself and end my life',
                'user_id': 'user_http_critical',
                'conversation_id': 'conv_http',
            },
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['result']['risk_level'] == 'critical'
        assert data['alert']['severity'] == 'critical'
        assert data['alert']['detection_id'] == data['result']['id']

    def test_benign_message(self, client):
        response = client.post(
            '/analyze',
            json={
                'message_id': 'msg_http_2',
                'content': 'Had a great day at the park',
                'user_id': 'user_http',
                'conversation_id': 'conv_http',
            },
        )

        assert response.status_code == 200
        assert json.loads(response.data) == {'result': None, 'alert': None}

    def test_missing_fields(self, client):
        response = client.post('/analyze', json={'content': 'hello'})
        assert response.status_code == 400

    def test_body_required(self, client):
        response = client.post('/analyze', data='not json', content_type='text/plain')
        assert response.status_code == 400


class TestAlertEndpoints:
    def test_create_and_get(self, client):
        alert = _create_high_alert(client)

        response = client.get(f"/alerts/{alert['id']}")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'pending'
        assert data['alert_type'] == 'manual_escalation'

    def test_create_rejects_unknown_severity(self, client):
        response = client.post(
            '/alerts',
            json={
                'user_id': 'user_http',
                'alert_type': 'panic_button',
                'severity': 'apocalyptic',
                'description': 'Panic button pressed',
            },
        )
        assert response.status_code == 400

    def test_unknown_alert(self, client):
        assert client.get('/alerts/alert_missing').status_code == 404
        response = client.post('/alerts/alert_missing/acknowledge', json={'actor_id': 'x'})
        assert response.status_code == 404

    def test_lifecycle(self, client):
        alert = _create_high_alert(client)
        alert_id = alert['id']

        response = client.post(
            f'/alerts/{alert_id}/acknowledge',
            json={'actor_id': 'therapist_1', 'notes': 'Calling now'},
        )
        assert response.status_code == 200
        assert json.loads(response.data)['acknowledged_by'] == 'therapist_1'

        response = client.post(f'/alerts/{alert_id}/progress', json={'actor_id': 'therapist_1'})
        assert json.loads(response.data)['status'] == 'in_progress'

        response = client.post(
            f'/alerts/{alert_id}/resolve',
            json={'actor_id': 'therapist_1', 'resolution': 'User safe'},
        )
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'resolved'
        assert data['resolution'] == 'User safe'

        active_ids = [a['id'] for a in json.loads(client.get('/alerts/active').data)['alerts']]
        assert alert_id not in active_ids

    def test_invalid_transition_is_conflict(self, client):
        alert = _create_high_alert(client)

        response = client.post(
            f"/alerts/{alert['id']}/resolve",
            json={'actor_id': 'therapist_1', 'resolution': 'too early'},
        )

        assert response.status_code == 409
        assert json.loads(response.data)['current_status'] == 'pending'

    def test_cancel_requires_reason(self, client):
        alert = _create_high_alert(client)
        response = client.post(f"/alerts/{alert['id']}/cancel", json={'actor_id': 'user_http'})
        assert response.status_code == 400

    def test_escalate(self, client):
        alert = _create_high_alert(client)

        response = client.post(
            f"/alerts/{alert['id']}/escalate",
            json={'actor_id': 'therapist_1', 'reason': 'no answer'},
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'escalated'
        assert data['escalation_level'] == 1


class TestMetricsEndpoint:
    def test_metrics(self, client):
        _create_high_alert(client)

        response = client.get('/alerts/metrics')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['total_alerts'] >= 1
        assert 'acknowledgment_rate' in data

    def test_invalid_since(self, client):
        assert client.get('/alerts/metrics?since=yesterday').status_code == 400


class TestNotificationConfirmEndpoint:
    def test_unknown_notification(self, client):
        response = client.post('/notifications/ntf_missing/confirm', json={'status': 'delivered'})
        assert response.status_code == 404

    def test_invalid_status(self, client):
        response = client.post('/notifications/ntf_missing/confirm', json={'status': 'sent'})
        assert response.status_code == 400
