"""
Resource locators and identifier normalization.

The upstream resource store rejects purely numeric resource ids, so numeric
ids arriving in request paths or payloads are remapped to a namespaced form
(`42` -> `res-42`). The remap is idempotent and best-effort: a failure while
normalizing is logged and the original identifier passes through.
"""

import logging
import re

logger = logging.getLogger(__name__)

NAMESPACED_ID_PREFIX = 'res-'

_NUMERIC_ID_PATTERN = re.compile(r'^\d+$')

# FHIR resource type names are capitalized (Patient, Observation, ...).
# Lower-case first segments such as `metadata` are system paths.
_RESOURCE_TYPE_PATTERN = re.compile(r'^[A-Z][A-Za-z]*$')


def normalize_id(resource_id):
    """Map a purely numeric id to `res-<digits>`; every other id is returned as is."""
    if isinstance(resource_id, str) and _NUMERIC_ID_PATTERN.match(resource_id):
        return f'{NAMESPACED_ID_PREFIX}{resource_id}'
    return resource_id


def is_resource_type(segment):
    return bool(segment) and bool(_RESOURCE_TYPE_PATTERN.match(segment))


class ResourceLocator:
    """Resource type and optional id (plus version/operation) addressed by a request path."""

    def __init__(self, resource_type, resource_id=None, version_id=None, operation=None,
                 history=False):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.version_id = version_id
        self.operation = operation
        # `_history` without a version: the history interaction, not a read
        self.history = history

    @property
    def has_resource_id(self):
        return bool(self.resource_id)

    @property
    def reference(self):
        if self.resource_id:
            return f'{self.resource_type}/{self.resource_id}'
        return self.resource_type

    def with_resource_id(self, resource_id):
        return ResourceLocator(self.resource_type, resource_id, version_id=self.version_id,
                               operation=self.operation, history=self.history)

    def __eq__(self, other):
        if not isinstance(other, ResourceLocator):
            return NotImplemented
        return (self.resource_type, self.resource_id, self.version_id, self.operation,
                self.history) == \
            (other.resource_type, other.resource_id, other.version_id, other.operation,
             other.history)

    def __repr__(self):
        parts = [self.reference]
        if self.version_id:
            parts.append(f'_history/{self.version_id}')
        elif self.history:
            parts.append('_history')
        if self.operation:
            parts.append(f'${self.operation}')
        return f'ResourceLocator({"/".join(parts)})'


def _path_segments(path, domain):
    """Return the segments after the `{domain}` segment, or None if absent."""
    segments = [s for s in (path or '').split('/') if s]
    if domain not in segments:
        return None
    return segments[segments.index(domain) + 1:]


def parse_locator(path, domain='fhir'):
    """
    Parse `/{domain}/{resourceType}[/{resourceId}][/_history[/{versionId}]]`.

    Returns None for non-resource paths (no domain segment, or a first
    segment that is not a resource type name).
    """
    segments = _path_segments(path, domain)
    if not segments or not is_resource_type(segments[0]):
        return None

    resource_type = segments[0]
    rest = segments[1:]
    resource_id = version_id = operation = None
    history = False

    if rest and rest[0].startswith('$'):
        operation = rest[0][1:]
    elif rest and rest[0] == '_history':
        history = True
    elif rest and not rest[0].startswith('_'):
        resource_id = rest[0]
        rest = rest[1:]
        if len(rest) >= 2 and rest[0] == '_history':
            version_id = rest[1]
        elif rest and rest[0] == '_history':
            history = True
        elif rest and rest[0].startswith('$'):
            operation = rest[0][1:]

    return ResourceLocator(resource_type, resource_id, version_id=version_id,
                           operation=operation, history=history)


def describe_path(path, domain='fhir'):
    """Name a non-resource path for audit purposes (`metadata`, `system`, ...)."""
    segments = _path_segments(path, domain)
    if segments:
        return segments[0]
    return 'system'


class IdentifierNormalizer:
    """Rewrites numeric resource ids in the path, the locator and write payloads."""

    def __init__(self, domain='fhir'):
        self.domain = domain

    def normalize_path(self, path):
        """Rewrite the resource-id segment of a resource path. Never raises."""
        try:
            segments = path.split('/')
            if self.domain not in segments:
                return path
            id_index = segments.index(self.domain) + 2
            if id_index >= len(segments) or not is_resource_type(segments[id_index - 1]):
                return path
            normalized = normalize_id(segments[id_index])
            if normalized != segments[id_index]:
                logger.info(f'Converting path id {segments[id_index]} to {normalized}')
                segments[id_index] = normalized
            return '/'.join(segments)
        except Exception as e:
            logger.error(f'Error normalizing path {path!r}: {e}')
            return path

    def normalize_locator(self, locator):
        if locator is None or not locator.resource_id:
            return locator
        try:
            normalized = normalize_id(locator.resource_id)
        except Exception as e:
            logger.error(f'Error normalizing id {locator.resource_id!r}: {e}')
            return locator
        if normalized == locator.resource_id:
            return locator
        return locator.with_resource_id(normalized)

    def normalize_payload(self, payload):
        """Rewrite a numeric `id` in a resource payload. Returns a new dict when changed."""
        if not isinstance(payload, dict) or not payload.get('resourceType'):
            return payload
        try:
            original = payload.get('id')
            normalized = normalize_id(original)
        except Exception as e:
            logger.error(f'Error normalizing payload id: {e}')
            return payload
        if normalized == original:
            return payload
        logger.info(f'Converting body id {original} to {normalized}')
        return {**payload, 'id': normalized}
