"""
Test fixtures for the clinical access gateway.
"""

import os
import pytest
from unittest.mock import MagicMock

# Set test environment before importing app so no file-based DB is created
os.environ['TESTING'] = '1'
os.environ['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
os.environ['GATEWAY_TOKEN_SECRET'] = 'test-secret-for-hmac-validation'
os.environ['AUDIT_BACKEND'] = 'database'
os.environ['AUDIT_ENABLED'] = 'true'

ASSIGNED_PATIENT_ID = 'test-patient-1'
PRACTITIONER_ID = 'prac-1'


@pytest.fixture
def app():
    """Create a test Flask application."""
    from main import app as flask_app
    flask_app.config['TESTING'] = True
    flask_app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'

    from models import db
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create a test client."""
    return app.test_client()


@pytest.fixture
def make_token():
    """Factory for signed bearer credentials."""
    from gateway.auth import generate_access_token

    def _make(subject_id='user-1', role='admin', linked_resource_id=None,
              organization_id=None, ttl_seconds=None):
        return generate_access_token(subject_id, role,
                                     linked_resource_id=linked_resource_id,
                                     organization_id=organization_id,
                                     ttl_seconds=ttl_seconds)
    return _make


@pytest.fixture
def admin_headers(make_token):
    return {'Authorization': f'Bearer {make_token("admin-1", "admin")}'}


@pytest.fixture
def practitioner_headers(make_token):
    token = make_token('user-prac-1', 'practitioner', linked_resource_id=PRACTITIONER_ID)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def patient_headers(make_token):
    token = make_token('user-pat-1', 'patient', linked_resource_id=ASSIGNED_PATIENT_ID)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def sample_patient():
    """Sample FHIR Patient resource."""
    return {
        'resourceType': 'Patient',
        'id': ASSIGNED_PATIENT_ID,
        'meta': {'versionId': '1', 'lastUpdated': '2024-01-15T10:30:00Z'},
        'name': [{'family': 'Smith', 'given': ['John']}],
        'gender': 'male',
        'birthDate': '1990-01-15',
        'generalPractitioner': [{'reference': f'Practitioner/{PRACTITIONER_ID}'}],
    }


@pytest.fixture
def sample_observation():
    """Sample FHIR Observation resource."""
    return {
        'resourceType': 'Observation',
        'id': 'test-obs-1',
        'meta': {'versionId': '1', 'lastUpdated': '2024-01-15T10:30:00Z'},
        'status': 'final',
        'code': {
            'coding': [
                {
                    'system': 'http://loinc.org',
                    'code': '2339-0',
                    'display': 'Glucose [Mass/volume] in Blood'
                }
            ]
        },
        'subject': {'reference': f'Patient/{ASSIGNED_PATIENT_ID}'},
        'effectiveDateTime': '2024-01-15T10:30:00Z',
        'valueQuantity': {
            'value': 95,
            'unit': 'mg/dL',
            'system': 'http://unitsofmeasure.org',
            'code': 'mg/dL'
        }
    }


@pytest.fixture
def mock_store(sample_patient, sample_observation):
    """
    Resource store double.

    Serves the sample resources by id; Patient/test-patient-1 is assigned to
    Practitioner/prac-1 and nobody else.
    """
    from gateway.errors import ResourceNotFound

    resources = {
        ('Patient', ASSIGNED_PATIENT_ID): sample_patient,
        ('Observation', 'test-obs-1'): sample_observation,
    }

    def get_by_id(resource_type, resource_id):
        try:
            return resources[(resource_type, resource_id)]
        except KeyError:
            raise ResourceNotFound(f'{resource_type}/{resource_id} not found')

    def is_assigned(patient_id, practitioner_id):
        return patient_id == ASSIGNED_PATIENT_ID and practitioner_id == PRACTITIONER_ID

    store = MagicMock()
    store.resources = resources
    store.get_by_id.side_effect = get_by_id
    store.is_patient_assigned_to_practitioner.side_effect = is_assigned
    store.healthy.return_value = {'status': 'connected', 'fhir_version': '4.0.1'}
    store.create.return_value = (201, None)
    store.forward.return_value = (200, {'resourceType': 'Bundle', 'type': 'searchset',
                                        'total': 0, 'entry': []})
    return store


@pytest.fixture
def memory_audit_store():
    """Audit store double that keeps entries in a list."""
    store = MagicMock()
    store.entries = []
    store.append.side_effect = store.entries.append
    return store


@pytest.fixture
def pipeline(mock_store, memory_audit_store):
    """Pipeline wired to the store doubles, installed as the route singleton."""
    from gateway.pipeline import build_pipeline
    from gateway.routes import reset_pipeline

    instance = build_pipeline(mock_store, audit_store=memory_audit_store)
    reset_pipeline(instance)
    yield instance
    reset_pipeline()
