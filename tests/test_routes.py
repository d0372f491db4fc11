"""
Route-level tests driving the Flask test client.

The resource store is a MagicMock; audit entries go to the in-memory SQLite
database so the admin audit endpoints can read them back.
"""

import pytest
from unittest.mock import patch

from gateway.audit import DatabaseAuditStore
from gateway.models import AuditEntryRecord
from gateway.pipeline import build_pipeline
from gateway.routes import get_pipeline, reset_pipeline


@pytest.fixture
def db_pipeline(app, mock_store):
    instance = build_pipeline(mock_store, audit_store=DatabaseAuditStore())
    reset_pipeline(instance)
    yield instance
    reset_pipeline()


class TestGuardedRoutes:

    def test_read_own_record(self, client, db_pipeline, patient_headers):
        resp = client.get('/fhir/Patient/test-patient-1', headers=patient_headers)
        assert resp.status_code == 200
        assert resp.mimetype == 'application/fhir+json'
        assert resp.headers['ETag'] == 'W/"1"'
        assert resp.get_json()['id'] == 'test-patient-1'

    def test_unauthenticated(self, client, db_pipeline):
        resp = client.get('/fhir/Patient/test-patient-1')
        assert resp.status_code == 401
        assert resp.headers['WWW-Authenticate'] == 'Bearer'
        assert resp.get_json()['resourceType'] == 'OperationOutcome'

        record = AuditEntryRecord.query.one()
        assert record.outcome == 'minor'
        assert record.subject_id == 'anonymous'

    def test_forbidden_body_carries_reason(self, client, db_pipeline, practitioner_headers):
        resp = client.get('/fhir/Patient/test-patient-2', headers=practitioner_headers)
        assert resp.status_code == 403
        issue = resp.get_json()['issue'][0]
        assert issue['code'] == 'forbidden'
        assert issue['details']['text'] == 'not assigned'

    def test_not_modified(self, client, db_pipeline, patient_headers):
        headers = {**patient_headers, 'If-None-Match': 'W/"1"'}
        resp = client.get('/fhir/Patient/test-patient-1', headers=headers)
        assert resp.status_code == 304
        assert resp.data == b''
        assert resp.headers['ETag'] == 'W/"1"'

    def test_create(self, client, db_pipeline, mock_store, practitioner_headers,
                    sample_observation):
        mock_store.create.return_value = (201, sample_observation)
        resp = client.post('/fhir/Observation', json=sample_observation,
                           headers=practitioner_headers)
        assert resp.status_code == 201
        mock_store.create.assert_called_once()
        assert AuditEntryRecord.query.one().action == 'create'

    def test_patient_transaction_bundle_denied(self, client, db_pipeline, mock_store,
                                               patient_headers):
        bundle = {'resourceType': 'Bundle', 'type': 'transaction', 'entry': [
            {'request': {'method': 'DELETE', 'url': 'Patient/someone-else'}}]}
        resp = client.post('/fhir/', json=bundle, headers=patient_headers)
        assert resp.status_code == 403
        assert resp.get_json()['issue'][0]['details']['text'] == \
            'system interaction not permitted'
        mock_store.forward.assert_not_called()
        record = AuditEntryRecord.query.one()
        assert (record.resource_type, record.outcome) == ('system', 'minor')

    def test_patient_system_history_denied(self, client, db_pipeline, mock_store,
                                           patient_headers):
        resp = client.get('/fhir/_history', headers=patient_headers)
        assert resp.status_code == 403
        mock_store.forward.assert_not_called()

    def test_invalid_json_body(self, client, db_pipeline, admin_headers):
        headers = {**admin_headers, 'Content-Type': 'application/fhir+json'}
        resp = client.post('/fhir/Observation', data='{not json', headers=headers)
        assert resp.status_code == 400

    def test_options_not_audited(self, client, db_pipeline):
        resp = client.open('/fhir/Patient', method='OPTIONS')
        assert resp.status_code == 204
        assert AuditEntryRecord.query.count() == 0

    def test_correlation_id_echoed(self, client, db_pipeline, admin_headers):
        headers = {**admin_headers, 'X-Correlation-Id': 'corr-7'}
        resp = client.get('/fhir/Patient', headers=headers)
        assert resp.headers['X-Correlation-Id'] == 'corr-7'
        assert AuditEntryRecord.query.one().correlation_id == 'corr-7'

    def test_audit_store_failure_keeps_response(self, client, db_pipeline, admin_headers):
        with patch.object(DatabaseAuditStore, 'append', side_effect=RuntimeError('db down')):
            resp = client.get('/fhir/Patient/test-patient-1', headers=admin_headers)
        assert resp.status_code == 200


class TestAuditRoutes:

    def _seed(self, client, admin_headers, patient_headers):
        client.get('/fhir/Patient/test-patient-1', headers=patient_headers)
        client.get('/fhir/Patient/test-patient-2', headers=patient_headers)
        client.get('/fhir/Observation/test-obs-1', headers=admin_headers)

    def test_recent_entries(self, client, db_pipeline, admin_headers, patient_headers):
        self._seed(client, admin_headers, patient_headers)
        resp = client.get('/audit?limit=2', headers=admin_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['total'] == 2
        assert body['entries'][0]['resource_type'] == 'Observation'

    def test_filter_by_outcome(self, client, db_pipeline, admin_headers, patient_headers):
        self._seed(client, admin_headers, patient_headers)
        body = client.get('/audit?outcome=minor', headers=admin_headers).get_json()
        assert [e['resource_id'] for e in body['entries']] == ['test-patient-2']

    def test_entries_for_user(self, client, db_pipeline, admin_headers, patient_headers):
        self._seed(client, admin_headers, patient_headers)
        body = client.get('/audit/user/user-pat-1', headers=admin_headers).get_json()
        assert body['total'] == 2
        assert {e['subject_id'] for e in body['entries']} == {'user-pat-1'}

    def test_entries_for_resource(self, client, db_pipeline, admin_headers, patient_headers):
        self._seed(client, admin_headers, patient_headers)
        body = client.get('/audit/resource/Observation/test-obs-1',
                          headers=admin_headers).get_json()
        assert body['total'] == 1

    def test_fhir_format(self, client, db_pipeline, admin_headers, patient_headers):
        self._seed(client, admin_headers, patient_headers)
        resp = client.get('/audit?format=fhir', headers=admin_headers)
        body = resp.get_json()
        assert resp.mimetype == 'application/fhir+json'
        assert body['resourceType'] == 'Bundle'
        assert body['entry'][0]['resource']['resourceType'] == 'AuditEvent'

    def test_query_is_itself_audited(self, client, db_pipeline, admin_headers):
        client.get('/audit', headers=admin_headers)
        record = AuditEntryRecord.query.one()
        assert record.resource_type == 'AuditEvent'
        assert record.action == 'query'

    def test_non_admin_forbidden(self, client, db_pipeline, practitioner_headers):
        resp = client.get('/audit', headers=practitioner_headers)
        assert resp.status_code == 403
        assert AuditEntryRecord.query.one().outcome == 'minor'

    def test_unauthenticated(self, client, db_pipeline):
        resp = client.get('/audit')
        assert resp.status_code == 401

    @pytest.mark.parametrize('query', ['limit=0', 'limit=1001', 'outcome=bad', 'format=xml'])
    def test_invalid_parameters(self, client, db_pipeline, admin_headers, query):
        resp = client.get(f'/audit?{query}', headers=admin_headers)
        assert resp.status_code == 400
        assert resp.get_json()['issue'][0]['code'] == 'invalid'


class TestHealth:

    def test_healthy(self, client, db_pipeline):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['checks']['upstream']['status'] == 'connected'
        assert AuditEntryRecord.query.count() == 0

    def test_degraded(self, client, db_pipeline, mock_store):
        mock_store.healthy.return_value = {'status': 'unreachable', 'error': 'ConnectError'}
        resp = client.get('/health')
        assert resp.status_code == 503
        assert resp.get_json()['status'] == 'degraded'


def test_pipeline_singleton(app):
    reset_pipeline()
    with patch('gateway.routes.get_store') as get_store:
        first = get_pipeline()
        assert get_pipeline() is first
        assert first.resource_store is get_store.return_value
    reset_pipeline()
