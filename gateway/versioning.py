"""
Resource versioning and conditional requests.

- Responses carrying `meta.versionId` get a weak ETag (W/"<versionId>") and,
  when `meta.lastUpdated` is present, a Last-Modified header.
- GET requests with If-None-Match / If-Modified-Since matching the current
  version short-circuit to 304 Not Modified without fetching the body.
- `/_history/<versionId>` and `?_versionId=` select a version; selecting the
  latest version yields exactly the current resource.
- FHIR resources are served as application/fhir+json; other payloads keep
  the caller's requested JSON content type.
"""

import logging
from datetime import datetime, timezone

from werkzeug.datastructures import MIMEAccept
from werkzeug.http import http_date, parse_accept_header, parse_date, parse_etags

logger = logging.getLogger(__name__)

FHIR_JSON_CONTENT_TYPE = 'application/fhir+json'
JSON_CONTENT_TYPE = 'application/json'


def _parse_instant(value):
    """Parse a FHIR instant; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f'Ignoring unparseable lastUpdated {value!r}')
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VersionState:
    """Version metadata reflected from a resource's `meta` element."""

    def __init__(self, version_id, last_updated=None):
        self.version_id = str(version_id)
        self.last_updated = last_updated

    @classmethod
    def from_resource(cls, resource):
        if not isinstance(resource, dict):
            return None
        meta = resource.get('meta')
        if not isinstance(meta, dict) or not meta.get('versionId'):
            return None
        return cls(meta['versionId'], _parse_instant(meta.get('lastUpdated')))

    @property
    def etag(self):
        return f'W/"{self.version_id}"'

    @property
    def last_modified(self):
        if self.last_updated is None:
            return None
        return http_date(self.last_updated)

    def headers(self):
        headers = {'ETag': self.etag}
        if self.last_modified:
            headers['Last-Modified'] = self.last_modified
        return headers

    def __repr__(self):
        return f'VersionState({self.version_id!r}, {self.last_updated!r})'


class VersioningCoordinator:

    def requested_version(self, locator, query_params):
        """Explicit version selector from the history path or `_versionId`."""
        if locator is not None and locator.version_id:
            return locator.version_id
        for value in (query_params or {}).get('_versionId', []):
            if value:
                return value
        return None

    @staticmethod
    def has_preconditions(headers):
        return bool(headers.get('If-None-Match') or headers.get('If-Modified-Since'))

    def is_not_modified(self, headers, state):
        """
        Evaluate read preconditions against `state`.

        If-None-Match takes precedence; If-Modified-Since is only consulted
        when no entity tag was sent (RFC 9110 13.2.2).
        """
        if state is None:
            return False

        if_none_match = headers.get('If-None-Match')
        if if_none_match:
            etags = parse_etags(if_none_match)
            return etags.star_tag or etags.contains_weak(state.version_id)

        if_modified_since = headers.get('If-Modified-Since')
        if if_modified_since and state.last_updated is not None:
            since = parse_date(if_modified_since)
            if since is None:
                return False
            # HTTP dates have one-second resolution
            return state.last_updated.replace(microsecond=0) <= since
        return False

    def read(self, store, locator, version_id=None):
        """
        Read the addressed resource, honouring a version selector.

        The latest version is always served from the canonical current read
        so both addressing forms yield the same resource state.
        """
        current = store.get_by_id(locator.resource_type, locator.resource_id)
        if not version_id:
            return current
        state = VersionState.from_resource(current)
        if state is not None and state.version_id == str(version_id):
            return current
        return store.vread(locator.resource_type, locator.resource_id, version_id)

    def response_headers(self, payload):
        state = VersionState.from_resource(payload)
        if state is None:
            return {}
        return state.headers()

    def content_type(self, payload, accept_header=None):
        if isinstance(payload, dict) and payload.get('resourceType'):
            return FHIR_JSON_CONTENT_TYPE
        if accept_header:
            accepted = parse_accept_header(accept_header, MIMEAccept)
            return accepted.best_match([JSON_CONTENT_TYPE, FHIR_JSON_CONTENT_TYPE],
                                       default=JSON_CONTENT_TYPE)
        return JSON_CONTENT_TYPE
