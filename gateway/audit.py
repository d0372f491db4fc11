"""
Audit trail for gateway access attempts.

Every completed request (allowed, denied or failed) produces exactly one
AuditEntry. Entries are write-once: stores expose append and search only.

Persistence never affects the primary request: AuditTrailRecorder.record
logs a failed append at ERROR (with the entry id, so loss is observable)
and returns False instead of raising.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError

from gateway.errors import UpstreamUnavailable
from gateway.models import AuditEntryRecord
from models import db

logger = logging.getLogger(__name__)

SYSTEM_NAME = 'Clinical Access Gateway'

# HTTP method -> audit action; GET splits into read/query on resource id
_METHOD_ACTIONS = {
    'POST': 'create',
    'PUT': 'update',
    'DELETE': 'delete',
}

# FHIR AuditEvent.action codes (search is reported as R; Q is not a valid code)
_FHIR_ACTION_CODES = {
    'read': 'R', 'query': 'R', 'create': 'C', 'update': 'U',
    'delete': 'D', 'execute': 'E',
}

# Restful interaction recorded in AuditEvent.subtype to keep read/query apart
_FHIR_INTERACTIONS = {
    'read': 'read', 'query': 'search-type', 'create': 'create',
    'update': 'update', 'delete': 'delete', 'execute': 'operation',
}

_FHIR_OUTCOME_CODES = {
    'success': '0', 'minor': '4', 'serious': '8', 'major': '12', 'fatal': '16',
}

_EXTENSION_BASE = 'urn:clinical-access-gateway:audit'


def action_for(method, has_resource_id):
    """Map an HTTP method to an audit action."""
    method = (method or '').upper()
    if method == 'GET':
        return 'read' if has_resource_id else 'query'
    return _METHOD_ACTIONS.get(method, 'execute')


def outcome_for(status_code):
    """Map a final response status to an audit outcome severity."""
    if status_code < 400:
        return 'success'
    if status_code < 500:
        return 'minor'
    return 'major'


def _format_instant(value):
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


class AuditEntry(NamedTuple):
    """Immutable record of one access attempt."""

    id: str
    timestamp: datetime
    subject_id: str
    role: str
    ip_address: str
    action: str
    resource_type: str
    resource_id: Optional[str]
    outcome: str
    description: str
    duration_ms: float
    status_code: Optional[int] = None
    correlation_id: Optional[str] = None

    def to_dict(self):
        data = self._asdict()
        data['timestamp'] = _format_instant(self.timestamp)
        return data

    def to_fhir_json(self):
        """Render as a FHIR R4 AuditEvent."""
        what = {'display': self.resource_type}
        if self.resource_id:
            what = {
                'reference': f'{self.resource_type}/{self.resource_id}',
                'display': f'{self.resource_type}/{self.resource_id}',
            }

        extensions = [
            {'url': f'{_EXTENSION_BASE}/entry-id', 'valueString': self.id},
            {'url': f'{_EXTENSION_BASE}/duration-ms', 'valueDecimal': self.duration_ms},
        ]
        if self.status_code is not None:
            extensions.append({'url': f'{_EXTENSION_BASE}/status-code',
                               'valueInteger': self.status_code})
        if self.correlation_id:
            extensions.append({'url': f'{_EXTENSION_BASE}/correlation-id',
                               'valueString': self.correlation_id})

        return {
            'resourceType': 'AuditEvent',
            'id': self.id,
            'extension': extensions,
            'type': {
                'system': 'http://terminology.hl7.org/CodeSystem/audit-event-type',
                'code': 'rest',
                'display': 'RESTful Operation',
            },
            'subtype': [{
                'system': 'http://hl7.org/fhir/restful-interaction',
                'code': _FHIR_INTERACTIONS.get(self.action, 'operation'),
            }],
            'action': _FHIR_ACTION_CODES.get(self.action, 'E'),
            'recorded': _format_instant(self.timestamp),
            'outcome': _FHIR_OUTCOME_CODES.get(self.outcome, '0'),
            'outcomeDesc': self.description,
            'agent': [
                {
                    'type': {
                        'coding': [{
                            'system': 'http://terminology.hl7.org/CodeSystem/v3-RoleClass',
                            'code': 'AGNT',
                            'display': 'Agent',
                        }]
                    },
                    'role': [{'text': self.role}],
                    'who': {
                        'identifier': {'value': self.subject_id},
                        'display': f'User {self.subject_id} ({self.role})',
                    },
                    'altId': self.subject_id,
                    'requestor': True,
                    'network': {'address': self.ip_address, 'type': '2'},
                },
            ],
            'source': {
                'observer': {'display': SYSTEM_NAME},
                'type': [{
                    'system': 'http://terminology.hl7.org/CodeSystem/security-source-type',
                    'code': '4',
                    'display': 'Application Server',
                }],
            },
            'entity': [
                {
                    'what': what,
                    'type': {
                        'system': 'http://terminology.hl7.org/CodeSystem/audit-entity-type',
                        'code': '2',
                        'display': 'System Object',
                    },
                    'role': {
                        'system': 'http://terminology.hl7.org/CodeSystem/object-role',
                        'code': '4',
                        'display': 'Domain Resource',
                    },
                }
            ],
        }

    @classmethod
    def from_fhir_json(cls, resource):
        """Rebuild an entry from an AuditEvent written by to_fhir_json."""
        extensions = {
            ext.get('url', '').rsplit('/', 1)[-1]: ext
            for ext in resource.get('extension', [])
            if ext.get('url', '').startswith(_EXTENSION_BASE)
        }
        agent = (resource.get('agent') or [{}])[0]
        what = ((resource.get('entity') or [{}])[0]).get('what', {})
        reference = what.get('reference') or what.get('display') or 'unknown'
        resource_type, _, resource_id = reference.partition('/')

        interaction = ((resource.get('subtype') or [{}])[0]).get('code')
        actions = {code: action for action, code in _FHIR_INTERACTIONS.items()}
        outcomes = {code: outcome for outcome, code in _FHIR_OUTCOME_CODES.items()}

        recorded = resource.get('recorded')
        timestamp = (datetime.fromisoformat(recorded.replace('Z', '+00:00'))
                     if recorded else datetime.now(timezone.utc))

        return cls(
            id=extensions.get('entry-id', {}).get('valueString') or resource.get('id'),
            timestamp=timestamp,
            subject_id=agent.get('altId') or agent.get('who', {}).get('identifier', {}).get('value', 'unknown'),
            role=((agent.get('role') or [{}])[0]).get('text', 'unknown'),
            ip_address=agent.get('network', {}).get('address', 'unknown'),
            action=actions.get(interaction, 'execute'),
            resource_type=resource_type,
            resource_id=resource_id or None,
            outcome=outcomes.get(resource.get('outcome'), 'success'),
            description=resource.get('outcomeDesc', ''),
            duration_ms=float(extensions.get('duration-ms', {}).get('valueDecimal', 0.0)),
            status_code=extensions.get('status-code', {}).get('valueInteger'),
            correlation_id=extensions.get('correlation-id', {}).get('valueString'),
        )


def _to_naive_utc(value):
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class DatabaseAuditStore:
    """Append-only audit table in the gateway's own database."""

    def append(self, entry):
        try:
            db.session.add(AuditEntryRecord.from_entry(entry))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def search(self, subject_id=None, resource_type=None, resource_id=None,
               action=None, outcome=None, since=None, limit=100):
        query = AuditEntryRecord.query
        if subject_id:
            query = query.filter_by(subject_id=subject_id)
        if resource_type:
            query = query.filter_by(resource_type=resource_type)
        if resource_id:
            query = query.filter_by(resource_id=resource_id)
        if action:
            query = query.filter_by(action=action)
        if outcome:
            query = query.filter_by(outcome=outcome)
        if since:
            query = query.filter(AuditEntryRecord.timestamp >= _to_naive_utc(since))
        records = query.order_by(AuditEntryRecord.timestamp.desc()).limit(limit).all()
        return [record.to_entry() for record in records]


class FHIRAuditStore:
    """Persists entries as AuditEvent resources on the resource store."""

    def __init__(self, store):
        self.store = store

    def append(self, entry):
        status_code, _ = self.store.create('AuditEvent', entry.to_fhir_json())
        if status_code not in (200, 201):
            raise UpstreamUnavailable(f'Audit store rejected entry with status {status_code}')

    def search(self, subject_id=None, resource_type=None, resource_id=None,
               action=None, outcome=None, since=None, limit=100):
        params = {'_sort': '-date', '_count': str(limit)}
        if subject_id:
            params['altid'] = subject_id
        if resource_type and resource_id:
            params['entity'] = f'{resource_type}/{resource_id}'
        if action:
            params['subtype'] = _FHIR_INTERACTIONS[action]
        if outcome:
            params['outcome'] = _FHIR_OUTCOME_CODES[outcome]
        if since:
            params['date'] = f'ge{_format_instant(since)}'

        bundle = self.store.search('AuditEvent', params)
        entries = []
        for item in bundle.get('entry', []):
            resource = item.get('resource') or {}
            if resource.get('resourceType') == 'AuditEvent':
                entries.append(AuditEntry.from_fhir_json(resource))
        if resource_type and not resource_id:
            entries = [e for e in entries if e.resource_type == resource_type]
        return entries[:limit]


class AuditTrailRecorder:
    """Builds audit entries and persists them without ever failing the request."""

    def __init__(self, store, enabled=True):
        self.store = store
        self.enabled = enabled

    def build_entry(self, subject_id, role, ip_address, method, resource_type,
                    resource_id, status_code, description, duration_ms,
                    correlation_id=None):
        return AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc),
            subject_id=subject_id or 'anonymous',
            role=role or 'anonymous',
            ip_address=ip_address or 'unknown',
            action=action_for(method, bool(resource_id)),
            resource_type=resource_type or 'unknown',
            resource_id=resource_id or None,
            outcome=outcome_for(status_code),
            description=description,
            duration_ms=round(duration_ms, 3),
            status_code=status_code,
            correlation_id=correlation_id,
        )

    def record(self, entry):
        """Persist `entry`. Returns False (and logs) when persistence fails."""
        if not self.enabled:
            logger.debug(f'Auditing disabled; dropping entry {entry.id}')
            return False
        try:
            self.store.append(entry)
        except Exception as e:
            logger.error(
                f'Failed to record audit entry {entry.id} '
                f'({entry.action} {entry.resource_type}/{entry.resource_id or ""} '
                f'by {entry.subject_id}): {e}'
            )
            return False
        logger.debug(
            f'Audit entry recorded: {entry.action} on {entry.resource_type}/'
            f'{entry.resource_id or ""} by {entry.role} {entry.subject_id} -> {entry.outcome}'
        )
        return True
