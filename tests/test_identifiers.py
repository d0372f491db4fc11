"""
Tests for resource locator parsing and identifier normalization.
"""

from unittest.mock import patch

from gateway.identifiers import (
    IdentifierNormalizer,
    ResourceLocator,
    describe_path,
    is_resource_type,
    normalize_id,
    parse_locator,
)


class TestNormalizeId:

    def test_numeric_id_is_namespaced(self):
        assert normalize_id('42') == 'res-42'

    def test_idempotent(self):
        assert normalize_id(normalize_id('42')) == 'res-42'

    def test_non_numeric_ids_unchanged(self):
        assert normalize_id('abc-1') == 'abc-1'
        assert normalize_id('42a') == '42a'
        assert normalize_id(None) is None


class TestParseLocator:

    def test_collection(self):
        assert parse_locator('/fhir/Patient') == ResourceLocator('Patient')

    def test_instance(self):
        locator = parse_locator('/fhir/Observation/obs-1')
        assert locator.resource_type == 'Observation'
        assert locator.resource_id == 'obs-1'
        assert locator.reference == 'Observation/obs-1'

    def test_history(self):
        locator = parse_locator('/fhir/Patient/p-1/_history/3')
        assert locator == ResourceLocator('Patient', 'p-1', version_id='3')

    def test_instance_history_interaction(self):
        locator = parse_locator('/fhir/Observation/obs-1/_history')
        assert locator == ResourceLocator('Observation', 'obs-1', history=True)
        assert locator.version_id is None

    def test_type_history_interaction(self):
        locator = parse_locator('/fhir/Observation/_history')
        assert locator == ResourceLocator('Observation', history=True)
        assert not locator.has_resource_id

    def test_type_operation(self):
        locator = parse_locator('/fhir/Patient/$match')
        assert locator.operation == 'match'
        assert not locator.has_resource_id

    def test_instance_operation(self):
        locator = parse_locator('/fhir/Patient/p-1/$everything')
        assert locator == ResourceLocator('Patient', 'p-1', operation='everything')

    def test_search_segment_is_not_an_id(self):
        assert not parse_locator('/fhir/Patient/_search').has_resource_id

    def test_non_resource_paths(self):
        assert parse_locator('/fhir/metadata') is None
        assert parse_locator('/fhir') is None
        assert parse_locator('/other/Patient/1') is None

    def test_custom_domain(self):
        assert parse_locator('/api/Patient/1', domain='api') == ResourceLocator('Patient', '1')

    def test_is_resource_type(self):
        assert is_resource_type('QuestionnaireResponse')
        assert not is_resource_type('metadata')
        assert not is_resource_type('$export')
        assert not is_resource_type('')

    def test_describe_path(self):
        assert describe_path('/fhir/metadata') == 'metadata'
        assert describe_path('/fhir') == 'system'


class TestIdentifierNormalizer:

    def setup_method(self):
        self.normalizer = IdentifierNormalizer()

    def test_path_id_rewritten(self):
        assert self.normalizer.normalize_path('/fhir/Patient/123') == '/fhir/Patient/res-123'

    def test_history_path_keeps_version(self):
        assert (self.normalizer.normalize_path('/fhir/Patient/123/_history/2')
                == '/fhir/Patient/res-123/_history/2')

    def test_path_without_id_unchanged(self):
        assert self.normalizer.normalize_path('/fhir/Patient') == '/fhir/Patient'
        assert self.normalizer.normalize_path('/fhir/metadata') == '/fhir/metadata'
        assert self.normalizer.normalize_path('/health') == '/health'

    def test_locator_rewritten(self):
        locator = self.normalizer.normalize_locator(ResourceLocator('Patient', '7', version_id='1'))
        assert locator == ResourceLocator('Patient', 'res-7', version_id='1')

    def test_locator_none(self):
        assert self.normalizer.normalize_locator(None) is None

    def test_payload_rewritten_without_mutating_input(self):
        payload = {'resourceType': 'Patient', 'id': '123', 'gender': 'female'}
        normalized = self.normalizer.normalize_payload(payload)
        assert normalized['id'] == 'res-123'
        assert normalized['gender'] == 'female'
        assert payload['id'] == '123'

    def test_payload_without_resource_type_unchanged(self):
        payload = {'id': '123'}
        assert self.normalizer.normalize_payload(payload) is payload

    def test_payload_non_dict(self):
        assert self.normalizer.normalize_payload(None) is None
        assert self.normalizer.normalize_payload([1, 2]) == [1, 2]

    def test_failure_passes_original_through(self):
        with patch('gateway.identifiers.normalize_id', side_effect=RuntimeError('boom')):
            assert self.normalizer.normalize_path('/fhir/Patient/123') == '/fhir/Patient/123'
            payload = {'resourceType': 'Patient', 'id': '123'}
            assert self.normalizer.normalize_payload(payload) is payload
