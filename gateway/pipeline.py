"""
Per-request access control pipeline.

Stages run in a fixed order, each taking and returning the request context:

  authenticate -> normalize -> resolve_compartment -> decide
    -> evaluate_preconditions -> invoke_handler -> apply_versioning

then exactly one audit entry is recorded. A stage ends the request early by
raising a GatewayError (401/403/404/502) or by completing the context
(304 Not Modified); the audit step runs either way. OPTIONS requests bypass
the pipeline entirely.

No state is shared between requests: everything a stage produces lives on
the RequestContext.
"""

import logging
import os
import time

from werkzeug.datastructures import Headers

from gateway.audit import AuditTrailRecorder, DatabaseAuditStore, FHIRAuditStore
from gateway.auth import TokenAuthenticator
from gateway.compartment import CompartmentResolver
from gateway.errors import Forbidden, GatewayError, NoCompartment, Unauthenticated
from gateway.fhir_store import StoreAssignmentLookup
from gateway.identifiers import IdentifierNormalizer, describe_path, parse_locator
from gateway.policy import AccessDecisionEngine, merge_filter
from gateway.versioning import VersionState, VersioningCoordinator

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = 'fhir'

_WRITE_METHODS = ('POST', 'PUT', 'PATCH')


def get_domain():
    return os.environ.get('GATEWAY_DOMAIN', DEFAULT_DOMAIN).strip('/') or DEFAULT_DOMAIN


class RequestContext:
    """Request-scoped state handed from stage to stage."""

    def __init__(self, method, path, headers=None, query_params=None, payload=None,
                 remote_addr=None):
        self.method = (method or 'GET').upper()
        self.path = path
        self.headers = Headers(headers or {})
        self.query_params = {name: list(values) for name, values in (query_params or {}).items()}
        self.payload = payload
        self.remote_addr = remote_addr
        self.correlation_id = self.headers.get('X-Correlation-Id')
        self.started_at = time.monotonic()

        # Stage outputs
        self.identity = None
        self.locator = None
        self.compartment = None
        self.decision = None
        self.version_id = None

        # Response
        self.status_code = None
        self.response_payload = None
        self.response_headers = {}
        self.content_type = None
        self.not_modified = False
        self.error = None

    @property
    def filter_patch(self):
        return self.decision.filter_patch if self.decision is not None else None

    @property
    def duration_ms(self):
        return (time.monotonic() - self.started_at) * 1000

    def complete(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self.response_payload = payload
        if headers:
            self.response_headers.update(headers)

    def fail(self, error):
        self.error = error
        self.complete(error.status_code, error.to_operation_outcome())
        if isinstance(error, Unauthenticated):
            self.response_headers['WWW-Authenticate'] = 'Bearer'


class PipelineResult:
    """What the HTTP layer needs to build a response."""

    def __init__(self, status_code, payload=None, headers=None, content_type=None):
        self.status_code = status_code
        self.payload = payload
        self.headers = headers or {}
        self.content_type = content_type

    def __repr__(self):
        return f'PipelineResult({self.status_code})'


class RequestPipeline:

    def __init__(self, authenticator, normalizer, resolver, engine, versioning,
                 recorder, handler, resource_store=None, domain=DEFAULT_DOMAIN):
        self.authenticator = authenticator
        self.normalizer = normalizer
        self.resolver = resolver
        self.engine = engine
        self.versioning = versioning
        self.recorder = recorder
        self.handler = handler
        self.resource_store = resource_store
        self.domain = domain
        self.stages = (
            self.authenticate,
            self.normalize,
            self.resolve_compartment,
            self.decide,
            self.evaluate_preconditions,
            self.invoke_handler,
            self.apply_versioning,
        )

    def handle(self, ctx):
        """Run every stage for `ctx`, record its audit entry and return the result."""
        if ctx.method == 'OPTIONS':
            return PipelineResult(204)

        try:
            for stage in self.stages:
                ctx = stage(ctx)
        except GatewayError as e:
            ctx.fail(e)
        except Exception as e:
            logger.exception(f'Unhandled error for {ctx.method} {ctx.path} '
                             f'[{ctx.correlation_id or "-"}]: {e}')
            ctx.fail(GatewayError())

        return self.finish(ctx)

    def abort(self, ctx, error):
        """Finish a request the caller abandoned before it reached the stages."""
        if ctx.identity is None:
            try:
                ctx.identity = self.authenticator.authenticate(ctx.headers.get('Authorization'))
            except Unauthenticated:
                pass
        ctx.fail(error)
        return self.finish(ctx)

    # --- Stages ---

    def authenticate(self, ctx):
        ctx.identity = self.authenticator.authenticate(ctx.headers.get('Authorization'))
        return ctx

    def normalize(self, ctx):
        ctx.path = self.normalizer.normalize_path(ctx.path)
        ctx.locator = self.normalizer.normalize_locator(parse_locator(ctx.path, self.domain))
        if ctx.method in _WRITE_METHODS:
            ctx.payload = self.normalizer.normalize_payload(ctx.payload)
        return ctx

    def resolve_compartment(self, ctx):
        if not self.engine.requires_compartment(ctx.identity, ctx.method, ctx.locator):
            return ctx
        try:
            ctx.compartment = self.resolver.resolve(ctx.locator)
        except NoCompartment:
            ctx.compartment = None
        return ctx

    def decide(self, ctx):
        system_path = describe_path(ctx.path, self.domain) if ctx.locator is None else None
        decision = self.engine.decide(ctx.identity, ctx.method, ctx.locator,
                                      compartment=ctx.compartment, payload=ctx.payload,
                                      system_path=system_path)
        ctx.decision = decision
        if not decision.allowed:
            logger.warning(
                f'Denied {ctx.method} {ctx.path} for {ctx.identity.role_name} '
                f'{ctx.identity.subject_id}: {decision.reason} [{ctx.correlation_id or "-"}]'
            )
            raise Forbidden(decision.reason)
        if decision.filter_patch:
            ctx.query_params = merge_filter(ctx.query_params, decision.filter_patch)
        logger.debug(f'{decision!r} for {ctx.method} {ctx.path}')
        return ctx

    def evaluate_preconditions(self, ctx):
        ctx.version_id = self.versioning.requested_version(ctx.locator, ctx.query_params)
        if (ctx.method != 'GET' or ctx.locator is None or not ctx.locator.has_resource_id
                or ctx.locator.history or not self.versioning.has_preconditions(ctx.headers)):
            return ctx

        state = self._current_state(ctx)
        if self.versioning.is_not_modified(ctx.headers, state):
            logger.debug(f'{ctx.locator!r} not modified since {state!r}')
            ctx.not_modified = True
            ctx.complete(304, None, state.headers())
        return ctx

    def invoke_handler(self, ctx):
        if ctx.status_code is not None:
            return ctx
        status_code, payload = self.handler(ctx)
        ctx.complete(status_code, payload)
        return ctx

    def apply_versioning(self, ctx):
        if ctx.not_modified:
            return ctx
        ctx.response_headers.update(self.versioning.response_headers(ctx.response_payload))
        ctx.content_type = self.versioning.content_type(ctx.response_payload,
                                                        ctx.headers.get('Accept'))
        return ctx

    # --- Helpers ---

    def _current_state(self, ctx):
        # A selected version is immutable, so its tag is known without a fetch
        if ctx.version_id:
            return VersionState(ctx.version_id)
        source = ctx.compartment.source if ctx.compartment is not None else None
        if source is None and self.resource_store is not None:
            source = self.resource_store.get_by_id(ctx.locator.resource_type,
                                                   ctx.locator.resource_id)
        return VersionState.from_resource(source)

    def finish(self, ctx):
        if ctx.content_type is None and ctx.response_payload is not None:
            ctx.content_type = self.versioning.content_type(ctx.response_payload,
                                                            ctx.headers.get('Accept'))
        if ctx.correlation_id:
            ctx.response_headers['X-Correlation-Id'] = ctx.correlation_id

        self._record_audit(ctx)

        return PipelineResult(ctx.status_code, ctx.response_payload,
                              dict(ctx.response_headers), ctx.content_type)

    def _record_audit(self, ctx):
        # Requests rejected before the normalize stage are audited under the same ids
        locator = ctx.locator or self.normalizer.normalize_locator(
            parse_locator(ctx.path, self.domain))
        identity = ctx.identity
        entry = self.recorder.build_entry(
            subject_id=identity.subject_id if identity else None,
            role=identity.role_name if identity else None,
            ip_address=ctx.remote_addr,
            method=ctx.method,
            resource_type=locator.resource_type if locator else describe_path(ctx.path, self.domain),
            resource_id=locator.resource_id if locator else None,
            status_code=ctx.status_code,
            description=self._describe(ctx),
            duration_ms=ctx.duration_ms,
            correlation_id=ctx.correlation_id,
        )
        self.recorder.record(entry)

    @staticmethod
    def _describe(ctx):
        request_line = f'{ctx.method} {ctx.path}'
        error = ctx.error
        if error is None:
            if ctx.not_modified:
                return f'{request_line} not modified'
            return f'{request_line} completed with {ctx.status_code} in {ctx.duration_ms:.0f}ms'
        if isinstance(error, Forbidden) or error.reason:
            return f'{request_line} denied: {error.reason}'
        if isinstance(error, Unauthenticated):
            return f'{request_line} rejected: {error.message}'
        if error.status_code == 499:
            return f'{request_line} aborted by client after {ctx.duration_ms:.0f}ms: {error.message}'
        return f'{request_line} failed with {error.status_code} ({error.code}) after {ctx.duration_ms:.0f}ms'


def build_audit_store(store, backend=None):
    """Select the audit store named by AUDIT_BACKEND (`database` or `fhir`)."""
    backend = (backend or os.environ.get('AUDIT_BACKEND', 'database')).strip().lower()
    if backend == 'fhir':
        return FHIRAuditStore(store)
    if backend != 'database':
        logger.warning(f'Unknown AUDIT_BACKEND {backend!r}; using database')
    return DatabaseAuditStore()


def audit_enabled():
    return os.environ.get('AUDIT_ENABLED', 'true').strip().lower() not in ('0', 'false', 'no', 'off')


def build_pipeline(store, audit_store=None, handler=None, authenticator=None, domain=None):
    """Wire a RequestPipeline around `store`, the remote resource store."""
    from gateway.forwarding import ForwardingHandler

    domain = domain or get_domain()
    versioning = VersioningCoordinator()
    return RequestPipeline(
        authenticator=authenticator or TokenAuthenticator(),
        normalizer=IdentifierNormalizer(domain),
        resolver=CompartmentResolver(store),
        engine=AccessDecisionEngine(StoreAssignmentLookup(store)),
        versioning=versioning,
        recorder=AuditTrailRecorder(audit_store or build_audit_store(store),
                                    enabled=audit_enabled()),
        handler=handler or ForwardingHandler(store, versioning, domain),
        resource_store=store,
        domain=domain,
    )
