"""
Error taxonomy for the access control pipeline.

Every error carries an HTTP status and a stable machine code. Error bodies
are FHIR OperationOutcome resources; they hold the stable code, a short
human-readable message and (for denials) the machine reason string, never
stack traces or upstream details.
"""


class GatewayError(Exception):
    """Base class for errors that terminate a request with a known status."""

    status_code = 500
    code = 'exception'
    default_message = 'Internal error while processing the request'

    def __init__(self, message=None, reason=None):
        self.message = message or self.default_message
        self.reason = reason
        super().__init__(self.message)

    def to_operation_outcome(self):
        return operation_outcome(self.code, self.message, self.reason)


class Unauthenticated(GatewayError):
    """Missing, malformed, expired or forged bearer credential."""

    status_code = 401
    code = 'unauthenticated'
    default_message = 'Missing or invalid authorization token'


class Forbidden(GatewayError):
    """Policy denial. `reason` is the stable machine reason string."""

    status_code = 403
    code = 'forbidden'
    default_message = 'Access to the requested resource is denied'

    def __init__(self, reason, message=None):
        super().__init__(message, reason=reason)


class NoCompartment(GatewayError):
    """The resource carries no resolvable Patient owner reference."""

    status_code = 403
    code = 'forbidden'
    default_message = 'Access to the requested resource is denied'

    def __init__(self, message=None):
        super().__init__(message, reason='no compartment')


class InvalidRequest(GatewayError):
    status_code = 400
    code = 'invalid'
    default_message = 'Invalid request parameters'


class ResourceNotFound(GatewayError):
    status_code = 404
    code = 'not-found'
    default_message = 'Resource not found'


class UpstreamUnavailable(GatewayError):
    """The resource store or audit store timed out or failed."""

    status_code = 502
    code = 'upstream-unavailable'
    default_message = 'Clinical resource store unavailable'


class RequestAborted(GatewayError):
    """The caller closed the connection before the request completed."""

    # Non-standard "client closed request" status, kept in the 4xx bucket
    status_code = 499
    code = 'aborted'
    default_message = 'Request aborted by the client'


def operation_outcome(code, diagnostics, reason=None, severity='error'):
    """Build a FHIR OperationOutcome body."""
    issue = {
        'severity': severity,
        'code': code,
        'diagnostics': diagnostics,
    }
    if reason:
        issue['details'] = {'text': reason}
    return {
        'resourceType': 'OperationOutcome',
        'issue': [issue],
    }
