"""
Bearer credential generation and verification.

Credentials are HMAC-SHA256 signed with a shared secret and include:
- Subject and role claims
- Optional linked FHIR resource id (e.g. the caller's own Patient record)
- Optional organization id
- Expiration timestamp and a random nonce

Token format: {base64url_payload}.{hmac_hex_signature}
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from enum import Enum

from marshmallow import ValidationError

from gateway.errors import Unauthenticated
from validators import CredentialClaimsSchema

logger = logging.getLogger(__name__)

# Default lifetime for issued credentials (1 hour)
DEFAULT_TOKEN_TTL_SECONDS = 3600


class Role(Enum):
    ADMIN = 'admin'
    PRACTITIONER = 'practitioner'
    PATIENT = 'patient'

    @classmethod
    def parse(cls, value):
        """Return the matching Role, or None for anything unrecognized."""
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Identity:
    """
    The authenticated caller for a single request.

    `role` is None when the credential named a role this gateway does not
    recognize; `raw_role` keeps the claimed value for audit purposes.
    """

    def __init__(self, subject_id, role, linked_resource_id=None,
                 organization_id=None, raw_role=None):
        self.subject_id = subject_id
        self.role = role
        self.linked_resource_id = linked_resource_id
        self.organization_id = organization_id
        self.raw_role = raw_role if raw_role is not None else (role.value if role else None)

    @property
    def role_name(self):
        if self.role is not None:
            return self.role.value
        return self.raw_role or 'unknown'

    def __repr__(self):
        return (f'Identity(subject_id={self.subject_id!r}, role={self.role_name!r}, '
                f'linked_resource_id={self.linked_resource_id!r})')


def _get_secret():
    """Get the HMAC secret from environment."""
    return os.environ.get('GATEWAY_TOKEN_SECRET', '')


def _get_ttl():
    raw = os.environ.get('GATEWAY_TOKEN_TTL', str(DEFAULT_TOKEN_TTL_SECONDS))
    try:
        return int(raw)
    except ValueError:
        logger.warning(f'Invalid GATEWAY_TOKEN_TTL {raw!r}; using {DEFAULT_TOKEN_TTL_SECONDS}')
        return DEFAULT_TOKEN_TTL_SECONDS


def _sign(secret, payload_b64):
    return hmac.new(secret.encode(), payload_b64.encode(), hashlib.sha256).hexdigest()


def generate_access_token(subject_id, role, linked_resource_id=None,
                          organization_id=None, ttl_seconds=None):
    """
    Generate a signed bearer credential.

    Args:
        subject_id: Identifier of the caller
        role: Role enum member or role name
        linked_resource_id: FHIR id of the resource representing the caller
        organization_id: Organization the caller belongs to
        ttl_seconds: Token lifetime in seconds (defaults to GATEWAY_TOKEN_TTL)

    Returns:
        Signed token string: {base64_payload}.{hmac_signature}

    Raises:
        ValueError: If GATEWAY_TOKEN_SECRET is not configured
    """
    secret = _get_secret()
    if not secret:
        raise ValueError('GATEWAY_TOKEN_SECRET environment variable is required')

    if ttl_seconds is None:
        ttl_seconds = _get_ttl()

    now = int(time.time())
    payload = {
        'sub': subject_id,
        'role': role.value if isinstance(role, Role) else role,
        'iat': now,
        'exp': now + ttl_seconds,
        'nonce': secrets.token_hex(16),
    }
    if linked_resource_id:
        payload['fhir_resource_id'] = linked_resource_id
    if organization_id:
        payload['org'] = organization_id

    payload_b64 = base64.urlsafe_b64encode(
        json.dumps(payload, separators=(',', ':')).encode()
    ).decode()
    return f'{payload_b64}.{_sign(secret, payload_b64)}'


class HMACCredentialVerifier:
    """
    Verifies signature and expiry of a bearer credential and returns its claims.

    Every failure raises Unauthenticated with the same caller-facing message;
    the specific cause is only logged.
    """

    def __init__(self, secret=None):
        # None means "read GATEWAY_TOKEN_SECRET on every call"
        self._secret = secret

    def verify(self, token):
        secret = self._secret if self._secret is not None else _get_secret()
        if not secret:
            logger.warning('GATEWAY_TOKEN_SECRET not configured; rejecting credential')
            raise Unauthenticated('Invalid or expired token')

        if not token or '.' not in token:
            self._reject('malformed credential')

        payload_b64, sig = token.rsplit('.', 1)

        # Verify HMAC signature (constant-time comparison)
        expected = _sign(secret, payload_b64).encode()
        if not hmac.compare_digest(sig.encode('utf-8', 'replace'), expected):
            self._reject('invalid signature')

        try:
            claims = json.loads(base64.urlsafe_b64decode(payload_b64))
        except (binascii.Error, ValueError):
            self._reject('malformed payload')

        if not isinstance(claims, dict):
            self._reject('malformed payload')

        exp = claims.get('exp')
        if not isinstance(exp, (int, float)) or exp < time.time():
            self._reject('expired')

        return claims

    @staticmethod
    def _reject(cause):
        logger.warning(f'Bearer credential rejected: {cause}')
        raise Unauthenticated('Invalid or expired token')


class TokenAuthenticator:
    """Turns an Authorization header into an Identity."""

    def __init__(self, verifier=None):
        self.verifier = verifier or HMACCredentialVerifier()
        self._claims_schema = CredentialClaimsSchema()

    @staticmethod
    def extract_bearer(authorization_header):
        """Return the token from a `Bearer <token>` header, or None."""
        if not authorization_header:
            return None
        scheme, _, token = authorization_header.strip().partition(' ')
        if scheme.lower() != 'bearer':
            return None
        token = token.strip()
        return token or None

    def authenticate(self, authorization_header):
        """
        Verify the caller's credential.

        Raises:
            Unauthenticated: missing, malformed, expired or forged credential
        """
        token = self.extract_bearer(authorization_header)
        if not token:
            raise Unauthenticated('Missing or invalid authorization token')

        claims = self.verifier.verify(token)

        try:
            data = self._claims_schema.load(claims)
        except ValidationError as e:
            logger.warning(f'Bearer credential rejected: invalid claims {sorted(e.messages)}')
            raise Unauthenticated('Invalid token payload')

        role = Role.parse(data['role'])
        if role is None:
            logger.warning(f'Credential for {data["sub"]} carries unrecognized role {data["role"]!r}')

        return Identity(
            subject_id=data['sub'],
            role=role,
            linked_resource_id=data.get('fhir_resource_id') or None,
            organization_id=data.get('org') or None,
            raw_role=data['role'],
        )
