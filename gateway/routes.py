"""
Flask blueprints for the gateway.

- fhir_blueprint   every method on /{domain}/..., run through the RequestPipeline
- audit_blueprint  admin-only audit trail queries (/audit/...)
- ops_blueprint    /health for liveness and readiness probes
"""

import json
import logging
from functools import wraps

from flask import Blueprint, Response, jsonify, request
from marshmallow import ValidationError
from werkzeug.exceptions import ClientDisconnected

from gateway.auth import Role
from gateway.errors import Forbidden, GatewayError, InvalidRequest, RequestAborted
from gateway.fhir_store import get_store
from gateway.identifiers import ResourceLocator
from gateway.pipeline import RequestContext, build_pipeline, get_domain
from models import db
from validators import AuditQuerySchema

logger = logging.getLogger(__name__)

_ROUTE_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']

fhir_blueprint = Blueprint('fhir', __name__, url_prefix=f'/{get_domain()}')
audit_blueprint = Blueprint('audit', __name__, url_prefix='/audit')
ops_blueprint = Blueprint('ops', __name__)


# --- Module-level singleton ---

_pipeline_instance = None


def get_pipeline():
    """Return the request pipeline singleton, wired to the configured stores."""
    global _pipeline_instance
    if _pipeline_instance is None:
        _pipeline_instance = build_pipeline(get_store())
    return _pipeline_instance


def reset_pipeline(pipeline=None):
    """Replace (or clear) the pipeline singleton (for testing)."""
    global _pipeline_instance
    _pipeline_instance = pipeline


# --- Helpers ---

def _request_context(payload=None):
    return RequestContext(
        method=request.method,
        path=request.path,
        headers=dict(request.headers),
        query_params=request.args.to_dict(flat=False),
        payload=payload,
        remote_addr=request.remote_addr,
    )


def _read_payload():
    """Parse the JSON body. Raises ClientDisconnected if the caller went away."""
    raw = request.get_data(cache=False)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.info(f'Ignoring non-JSON body on {request.method} {request.path}')
        return None


def _to_response(result):
    if result.payload is None:
        response = Response(status=result.status_code)
    else:
        response = jsonify(result.payload)
        response.status_code = result.status_code
    if result.content_type:
        response.mimetype = result.content_type
    for name, value in result.headers.items():
        response.headers[name] = value
    return response


def require_role(*roles):
    """
    Flask route decorator for admin endpoints.

    Authenticates the caller, checks the role and records exactly one audit
    entry (a `query` on AuditEvent) whatever the outcome. The wrapped view
    returns (status_code, payload).
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            pipeline = get_pipeline()
            ctx = _request_context()
            ctx.locator = ResourceLocator('AuditEvent')
            try:
                pipeline.authenticate(ctx)
                if ctx.identity.role not in roles:
                    logger.warning(f'Denied {ctx.method} {ctx.path} for {ctx.identity.role_name} '
                                   f'{ctx.identity.subject_id}: role not permitted')
                    raise Forbidden('role not permitted')
                status_code, payload = f(*args, **kwargs)
                ctx.complete(status_code, payload)
            except GatewayError as e:
                ctx.fail(e)
            except Exception as e:
                logger.exception(f'Unhandled error for {ctx.method} {ctx.path}: {e}')
                ctx.fail(GatewayError())
            return _to_response(pipeline.finish(ctx))
        return decorated
    return decorator


# --- Guarded FHIR paths ---

@fhir_blueprint.route('/', defaults={'subpath': ''}, methods=_ROUTE_METHODS)
@fhir_blueprint.route('/<path:subpath>', methods=_ROUTE_METHODS)
def guarded(subpath):
    pipeline = get_pipeline()
    try:
        payload = _read_payload()
    except ClientDisconnected:
        ctx = _request_context()
        logger.warning(f'Client disconnected during {ctx.method} {ctx.path} '
                       f'[{ctx.correlation_id or "-"}]')
        return _to_response(pipeline.abort(
            ctx, RequestAborted('Client disconnected before the request body was received')))

    return _to_response(pipeline.handle(_request_context(payload)))


# --- Audit trail queries ---

def _load_query():
    try:
        return AuditQuerySchema().load(request.args)
    except ValidationError as e:
        raise InvalidRequest(f'Invalid query parameters: {e.messages}')


def _audit_response(entries, params):
    if params['format'] == 'fhir':
        return 200, {
            'resourceType': 'Bundle',
            'type': 'searchset',
            'total': len(entries),
            'entry': [{'resource': entry.to_fhir_json()} for entry in entries],
        }
    return 200, {
        'total': len(entries),
        'entries': [entry.to_dict() for entry in entries],
    }


def _search_audit(**filters):
    params = _load_query()
    entries = get_pipeline().recorder.store.search(
        action=params.get('action'),
        outcome=params.get('outcome'),
        since=params.get('since'),
        limit=params['limit'],
        **filters,
    )
    return _audit_response(entries, params)


@audit_blueprint.route('', methods=['GET'])
@require_role(Role.ADMIN)
def recent_entries():
    """Most recent audit entries, newest first."""
    return _search_audit()


@audit_blueprint.route('/user/<subject_id>', methods=['GET'])
@require_role(Role.ADMIN)
def entries_for_user(subject_id):
    return _search_audit(subject_id=subject_id)


@audit_blueprint.route('/resource/<resource_type>/<resource_id>', methods=['GET'])
@require_role(Role.ADMIN)
def entries_for_resource(resource_type, resource_id):
    return _search_audit(resource_type=resource_type, resource_id=resource_id)


# --- Health Check ---

@ops_blueprint.route('/health', methods=['GET'])
def health_check():
    """
    Health check endpoint for container orchestration (liveness/readiness).
    Returns 200 if the gateway and its resource store are reachable, 503 if degraded.
    """
    health = {
        'status': 'healthy',
        'domain': get_domain(),
        'checks': {},
    }

    try:
        db.session.execute(db.text('SELECT 1'))
        health['checks']['database'] = 'ok'
    except Exception as e:
        health['status'] = 'degraded'
        health['checks']['database'] = 'error'
        logger.warning(f'Health check: database failed: {e}')

    store = get_pipeline().resource_store
    if store is not None:
        upstream_health = store.healthy()
        health['checks']['upstream'] = upstream_health
        if upstream_health.get('status') != 'connected':
            health['status'] = 'degraded'
    else:
        health['checks']['upstream'] = 'not_configured'

    status_code = 200 if health['status'] == 'healthy' else 503
    return jsonify(health), status_code
