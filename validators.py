from marshmallow import Schema, fields, validate, validates, ValidationError, EXCLUDE

AUDIT_ACTIONS = ['read', 'create', 'update', 'delete', 'query', 'execute']
AUDIT_OUTCOMES = ['success', 'minor', 'serious', 'major', 'fatal']


class CredentialClaimsSchema(Schema):
    """Schema for the claims carried inside a verified bearer credential."""

    class Meta:
        # Ignore unknown claims instead of raising errors
        unknown = EXCLUDE

    sub = fields.String(required=True, validate=validate.Length(min=1, max=128),
                        error_messages={'required': 'Subject claim is required'})
    role = fields.String(required=True, validate=validate.Length(min=1, max=32),
                         error_messages={'required': 'Role claim is required'})
    fhir_resource_id = fields.String(required=False, allow_none=True)
    org = fields.String(required=False, allow_none=True)
    exp = fields.Integer(required=True)
    iat = fields.Integer(required=False)
    nonce = fields.String(required=False)

    @validates('fhir_resource_id')
    def validate_linked_resource(self, value, **kwargs):
        """Linked resources are bare ids, never references."""
        if value and '/' in value:
            raise ValidationError('Linked resource must be a bare id, not a reference')


class AuditQuerySchema(Schema):
    """Schema for validating audit trail query parameters."""

    class Meta:
        unknown = EXCLUDE

    limit = fields.Integer(load_default=100, validate=validate.Range(min=1, max=1000))
    action = fields.String(required=False, validate=validate.OneOf(AUDIT_ACTIONS))
    outcome = fields.String(required=False, validate=validate.OneOf(AUDIT_OUTCOMES))
    since = fields.DateTime(required=False)
    format = fields.String(load_default='json', validate=validate.OneOf(['json', 'fhir']))
