"""
Remote FHIR resource store client.

The gateway never stores clinical resources itself. Every compartment lookup,
assignment check and forwarded request goes to the upstream FHIR server
configured by FHIR_UPSTREAM_URL (HAPI FHIR, SMART Health IT, ...):

  Client -> Gateway (auth, policy, audit) -> Upstream FHIR Server

All calls run with a bounded timeout. Lookups used for access decisions fail
closed: a transport error, timeout or 5xx raises UpstreamUnavailable rather
than returning an empty result.
"""

import logging
import os

import httpx

from gateway.errors import ResourceNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = 'http://localhost:8080/fhir'
DEFAULT_UPSTREAM_TIMEOUT = 10.0

FHIR_JSON = 'application/fhir+json'


def _get_timeout():
    raw = os.environ.get('FHIR_UPSTREAM_TIMEOUT', str(DEFAULT_UPSTREAM_TIMEOUT))
    try:
        return float(raw)
    except ValueError:
        logger.warning(f'Invalid FHIR_UPSTREAM_TIMEOUT {raw!r}; using {DEFAULT_UPSTREAM_TIMEOUT}')
        return DEFAULT_UPSTREAM_TIMEOUT


class FHIRResourceStore:
    """
    HTTP client for the upstream resource store.

    Read helpers return parsed JSON dicts. Write helpers return
    (status_code, payload) so upstream outcomes pass through unchanged.
    """

    def __init__(self, upstream_url: str, timeout: float | None = None):
        self.upstream_url = upstream_url.rstrip('/')
        self._client = httpx.Client(
            base_url=self.upstream_url,
            timeout=timeout if timeout is not None else _get_timeout(),
            follow_redirects=True,
            headers={
                'Accept': 'application/fhir+json, application/json',
                'User-Agent': 'clinical-access-gateway/1.0',
            },
        )
        logger.info(f'FHIR resource store client initialized: {self.upstream_url}')

    def healthy(self) -> dict:
        """Check upstream server reachability via /metadata."""
        try:
            resp = self._client.get('/metadata', params={'_summary': 'true'})
            if resp.status_code == 200:
                data = resp.json()
                return {
                    'status': 'connected',
                    'fhir_version': data.get('fhirVersion', 'unknown'),
                    'software': data.get('software', {}).get('name', 'unknown'),
                }
            return {'status': 'error', 'http_status': resp.status_code}
        except (httpx.HTTPError, ValueError) as e:
            return {'status': 'unreachable', 'error': type(e).__name__}

    # --- Lookups used by access decisions ---

    def get_by_id(self, resource_type: str, resource_id: str) -> dict:
        """Read the current version of a resource."""
        return self._read(f'/{resource_type}/{resource_id}')

    def vread(self, resource_type: str, resource_id: str, version_id: str) -> dict:
        """Read a specific historical version of a resource."""
        return self._read(f'/{resource_type}/{resource_id}/_history/{version_id}')

    def search(self, resource_type: str, params: dict) -> dict:
        """Search resources on the upstream server. Returns a Bundle."""
        path = f'/{resource_type}'
        resp = self._request('GET', path, params=params)
        if resp.status_code != 200:
            logger.warning(f'Upstream search {path} returned {resp.status_code}')
            raise UpstreamUnavailable()
        return self._json(resp) or self._empty_bundle()

    def is_patient_assigned_to_practitioner(self, patient_id: str, practitioner_id: str) -> bool:
        """
        Check whether the practitioner cares for the patient.

        A patient is assigned when the Patient lists the practitioner as
        general practitioner, or a CareTeam for the patient includes them.
        """
        practitioner_ref = f'Practitioner/{practitioner_id}'
        bundle = self.search('Patient', {
            '_id': patient_id,
            'general-practitioner': practitioner_ref,
            '_summary': 'count',
        })
        if self._bundle_has_matches(bundle):
            return True

        bundle = self.search('CareTeam', {
            'patient': f'Patient/{patient_id}',
            'participant': practitioner_ref,
            '_summary': 'count',
        })
        return self._bundle_has_matches(bundle)

    # --- Forwarded writes ---

    def create(self, resource_type: str, resource: dict) -> tuple[int, dict | None]:
        resp = self._request('POST', f'/{resource_type}', json=resource,
                             headers={'Content-Type': FHIR_JSON})
        return resp.status_code, self._json(resp)

    def update(self, resource_type: str, resource_id: str, resource: dict,
               if_match: str | None = None) -> tuple[int, dict | None]:
        headers = {'Content-Type': FHIR_JSON}
        if if_match:
            headers['If-Match'] = if_match
        resp = self._request('PUT', f'/{resource_type}/{resource_id}', json=resource,
                             headers=headers)
        return resp.status_code, self._json(resp)

    def delete(self, resource_type: str, resource_id: str) -> tuple[int, dict | None]:
        resp = self._request('DELETE', f'/{resource_type}/{resource_id}')
        return resp.status_code, self._json(resp)

    def forward(self, method: str, path: str, params: dict | None = None,
                body: dict | None = None) -> tuple[int, dict | None]:
        """Pass a request through unchanged ($operations, metadata, ...)."""
        kwargs = {'params': params}
        if body is not None:
            kwargs['json'] = body
            kwargs['headers'] = {'Content-Type': FHIR_JSON}
        resp = self._request(method, path, **kwargs)
        return resp.status_code, self._json(resp)

    def close(self):
        """Close the HTTP client."""
        self._client.close()

    # --- Internal helpers ---

    def _read(self, path):
        resp = self._request('GET', path)
        if resp.status_code in (404, 410):
            raise ResourceNotFound(f'{path.lstrip("/")} not found')
        if resp.status_code != 200:
            logger.warning(f'Upstream read {path} returned {resp.status_code}')
            raise UpstreamUnavailable()
        data = self._json(resp)
        if data is None:
            logger.error(f'Upstream read {path} returned a non-JSON body')
            raise UpstreamUnavailable()
        return data

    def _request(self, method, path, **kwargs):
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f'Upstream {method} {path} timed out: {e}')
            raise UpstreamUnavailable('Clinical resource store timed out')
        except httpx.HTTPError as e:
            logger.error(f'Upstream {method} {path} failed: {e}')
            raise UpstreamUnavailable()
        if resp.status_code >= 500:
            logger.error(f'Upstream {method} {path} returned {resp.status_code}')
            raise UpstreamUnavailable()
        return resp

    @staticmethod
    def _json(resp):
        if not resp.content:
            return None
        content_type = resp.headers.get('content-type', '')
        if 'json' not in content_type:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _bundle_has_matches(bundle):
        return bool(bundle.get('total')) or bool(bundle.get('entry'))

    @staticmethod
    def _empty_bundle():
        return {
            'resourceType': 'Bundle',
            'type': 'searchset',
            'total': 0,
            'entry': [],
        }


class StoreAssignmentLookup:
    """
    Practitioner-patient assignment rule.

    Backed by a search against the resource store today; kept separate so
    the rule can move to a dedicated service without touching the policy.
    """

    def __init__(self, store):
        self.store = store

    def is_patient_assigned_to_practitioner(self, patient_id, practitioner_id):
        if not patient_id or not practitioner_id:
            return False
        assigned = self.store.is_patient_assigned_to_practitioner(patient_id, practitioner_id)
        logger.debug(f'Assignment Patient/{patient_id} <- Practitioner/{practitioner_id}: {assigned}')
        return assigned


# --- Module-level singleton ---

_store_instance: FHIRResourceStore | None = None


def get_store() -> FHIRResourceStore:
    """Return the resource store singleton."""
    global _store_instance
    if _store_instance is None:
        upstream_url = os.environ.get('FHIR_UPSTREAM_URL', '').strip() or DEFAULT_UPSTREAM_URL
        _store_instance = FHIRResourceStore(upstream_url)
    return _store_instance


def reset_store():
    """Reset the store singleton (for testing)."""
    global _store_instance
    if _store_instance:
        _store_instance.close()
    _store_instance = None
