"""
Role-based access policy for FHIR resources.

Decision table keyed by (role, method, resource type, has resource id):

  Admin         everything, no compartment checks, no filters
  Practitioner  reads of assigned patients' compartments; writes of clinical
                resource types for assigned patients; never deletes
  Patient       reads of their own compartment (collection queries are
                narrowed by a forced filter); own demographics updates;
                self-reported Observations and QuestionnaireResponses

System-level interactions (the root path, `_history`, `$export`, Bundle
POSTs) and type-level history are Admin-only. Other roles may only read
non-clinical system paths such as `metadata`.

Every Deny carries a stable machine reason string for the audit trail.
"""

import logging

from gateway.auth import Role
from gateway.compartment import extract_patient_owner
from gateway.identifiers import normalize_id

logger = logging.getLogger(__name__)

READ_METHODS = frozenset({'GET', 'HEAD'})
WRITE_METHODS = frozenset({'POST', 'PUT'})

# System paths that expose no clinical data
NON_CLINICAL_SYSTEM_PATHS = frozenset({'metadata', '.well-known'})

# Clinical resource types practitioners may create and update
PRACTITIONER_WRITABLE_TYPES = frozenset({
    'Observation', 'Encounter', 'Condition', 'Procedure', 'DiagnosticReport',
    'MedicationRequest', 'CarePlan', 'QuestionnaireResponse', 'DocumentReference',
})

# Self-reported resource types patients may create
PATIENT_CREATABLE_TYPES = frozenset({'QuestionnaireResponse', 'Observation'})

REASON_NOT_ASSIGNED = 'not assigned'
REASON_NOT_OWN_RECORD = 'not own record'
REASON_NO_COMPARTMENT = 'no compartment'
REASON_NO_LINKED_RECORD = 'no linked record'
REASON_UNRECOGNIZED_ROLE = 'unrecognized role'
REASON_SYSTEM_INTERACTION = 'system interaction not permitted'
REASON_TYPE_HISTORY = 'type history not permitted'


class AccessDecision:
    """Base of the Allow / Deny / AllowWithFilter union."""

    allowed = True
    reason = None
    filter_patch = None

    def __eq__(self, other):
        return (type(self) is type(other)
                and self.reason == other.reason
                and self.filter_patch == other.filter_patch)

    def __hash__(self):
        return hash((type(self).__name__, self.reason))


class Allow(AccessDecision):
    def __repr__(self):
        return 'Allow()'


class Deny(AccessDecision):
    allowed = False

    def __init__(self, reason):
        self.reason = reason

    def __repr__(self):
        return f'Deny({self.reason!r})'


class AllowWithFilter(AccessDecision):
    def __init__(self, filter_patch):
        self.filter_patch = dict(filter_patch)

    def __repr__(self):
        return f'AllowWithFilter({self.filter_patch!r})'


def merge_filter(query_params, filter_patch):
    """
    Merge a filter patch into search parameters.

    `query_params` maps names to lists of values. Patched names replace any
    caller-supplied values so the compartment filter cannot be widened.
    """
    merged = {name: list(values) for name, values in (query_params or {}).items()}
    for name, value in (filter_patch or {}).items():
        merged[name] = [value]
    return merged


def _same_id(left, right):
    return bool(left) and bool(right) and normalize_id(left) == normalize_id(right)


class AccessDecisionEngine:
    """Evaluates the decision table for one request."""

    def __init__(self, assignment_lookup):
        self.assignment_lookup = assignment_lookup
        self._role_handlers = {
            Role.ADMIN: self._decide_admin,
            Role.PRACTITIONER: self._decide_practitioner,
            Role.PATIENT: self._decide_patient,
        }

    def requires_compartment(self, identity, method, locator):
        """Whether decide() will consult the compartment of the addressed resource."""
        if locator is None or not locator.has_resource_id:
            return False
        if identity.role is Role.PRACTITIONER:
            if method in READ_METHODS:
                return not self._is_own_practitioner_record(identity, locator)
            return method == 'PUT' and locator.resource_type in PRACTITIONER_WRITABLE_TYPES
        if identity.role is Role.PATIENT:
            return (method in READ_METHODS and locator.resource_type != 'Patient'
                    and bool(identity.linked_resource_id))
        return False

    def decide(self, identity, method, locator, compartment=None, payload=None,
               system_path=None):
        """
        Decide whether `identity` may perform `method` on `locator`.

        Args:
            identity: authenticated caller
            method: upper-case HTTP method
            locator: ResourceLocator, or None for non-resource paths
            compartment: CompartmentReference of the addressed resource, when resolved
            payload: request body for writes
            system_path: first path segment of a non-resource path (`metadata`, ...)
        """
        handler = self._role_handlers.get(identity.role)
        if handler is None:
            return Deny(REASON_UNRECOGNIZED_ROLE)
        if locator is None:
            return self._decide_system(identity, method, system_path)
        if (identity.role is not Role.ADMIN and locator.history
                and not locator.has_resource_id):
            return Deny(REASON_TYPE_HISTORY)
        return handler(identity, method, locator, compartment, payload)

    def _decide_system(self, identity, method, system_path):
        if identity.role is Role.ADMIN:
            return Allow()
        if method in READ_METHODS and system_path in NON_CLINICAL_SYSTEM_PATHS:
            return Allow()
        return Deny(REASON_SYSTEM_INTERACTION)

    # --- Admin ---

    def _decide_admin(self, identity, method, locator, compartment, payload):
        return Allow()

    # --- Practitioner ---

    def _decide_practitioner(self, identity, method, locator, compartment, payload):
        resource_type = locator.resource_type

        if method in READ_METHODS:
            if not locator.has_resource_id:
                if resource_type == 'Patient' and identity.organization_id:
                    return AllowWithFilter(
                        {'organization': f'Organization/{identity.organization_id}'})
                return Allow()
            if self._is_own_practitioner_record(identity, locator):
                return Allow()
            return self._check_assignment(identity, compartment and compartment.owner_id,
                                          missing=REASON_NOT_ASSIGNED)

        if method == 'DELETE':
            return Deny(f'practitioner cannot delete {resource_type}')

        if method not in WRITE_METHODS:
            return Deny(f'practitioner cannot {method.lower()} {resource_type}')

        if resource_type not in PRACTITIONER_WRITABLE_TYPES:
            return Deny(f'practitioner cannot modify {resource_type}')

        if locator.has_resource_id:
            decision = self._check_assignment(identity, compartment and compartment.owner_id)
            if not decision.allowed:
                return decision
            # A rewritten subject must also point at an assigned patient
            payload_owner = extract_patient_owner(payload)
            if payload_owner and payload_owner != compartment.owner_id:
                return self._check_assignment(identity, payload_owner)
            return decision

        return self._check_assignment(identity, extract_patient_owner(payload))

    def _check_assignment(self, identity, patient_id, missing=REASON_NO_COMPARTMENT):
        if not patient_id:
            return Deny(missing)
        practitioner_id = identity.linked_resource_id or identity.subject_id
        if self.assignment_lookup.is_patient_assigned_to_practitioner(patient_id, practitioner_id):
            return Allow()
        return Deny(REASON_NOT_ASSIGNED)

    @staticmethod
    def _is_own_practitioner_record(identity, locator):
        return (locator.resource_type == 'Practitioner'
                and _same_id(locator.resource_id, identity.linked_resource_id))

    # --- Patient ---

    def _decide_patient(self, identity, method, locator, compartment, payload):
        resource_type = locator.resource_type
        linked_id = identity.linked_resource_id

        if method in READ_METHODS:
            if not linked_id:
                return Deny(REASON_NO_LINKED_RECORD)
            if not locator.has_resource_id:
                if resource_type == 'Patient':
                    return AllowWithFilter({'_id': normalize_id(linked_id)})
                return AllowWithFilter({'patient': f'Patient/{normalize_id(linked_id)}'})
            if resource_type == 'Patient':
                if _same_id(locator.resource_id, linked_id):
                    return Allow()
                return Deny(REASON_NOT_OWN_RECORD)
            if compartment is None:
                return Deny(REASON_NO_COMPARTMENT)
            if _same_id(compartment.owner_id, linked_id):
                return Allow()
            return Deny(REASON_NOT_OWN_RECORD)

        # Own demographics
        if (method == 'PUT' and resource_type == 'Patient'
                and _same_id(locator.resource_id, linked_id)):
            return Allow()

        # Self-reported data about themselves
        if (method == 'POST' and resource_type in PATIENT_CREATABLE_TYPES
                and not locator.has_resource_id
                and _same_id(extract_patient_owner(payload), linked_id)):
            return Allow()

        return Deny(f'patients cannot modify {resource_type}')
