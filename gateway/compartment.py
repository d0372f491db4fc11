"""
Patient compartment resolution.

A clinical resource belongs to the compartment of the Patient it references.
Patient resources own themselves; everything else is fetched from the
resource store and inspected for `subject.reference`, then
`patient.reference`.
"""

import logging
import re

from gateway.errors import NoCompartment
from gateway.identifiers import normalize_id

logger = logging.getLogger(__name__)

# Matches "Patient/<id>", absolute URLs ending in it, and versioned references
_PATIENT_REF_PATTERN = re.compile(r'(?:^|/)Patient/([A-Za-z0-9\-.]{1,64})(?:/_history/[^/]+)?$')

_OWNER_FIELDS = ('subject', 'patient')


class CompartmentReference:
    """Owning patient of a resource. `source` is the fetched resource, if any."""

    owner_type = 'Patient'

    def __init__(self, owner_id, source=None):
        self.owner_id = owner_id
        self.source = source

    @property
    def reference(self):
        return f'{self.owner_type}/{self.owner_id}'

    def __eq__(self, other):
        if not isinstance(other, CompartmentReference):
            return NotImplemented
        return self.owner_id == other.owner_id

    def __repr__(self):
        return f'CompartmentReference({self.reference})'


def parse_patient_reference(reference):
    """Return the (normalized) patient id from a `Patient/<id>` reference, or None."""
    if not isinstance(reference, str):
        return None
    match = _PATIENT_REF_PATTERN.search(reference.strip())
    if not match:
        return None
    return normalize_id(match.group(1))


def extract_patient_owner(resource):
    """Inspect `subject.reference` then `patient.reference` for a Patient owner."""
    if not isinstance(resource, dict):
        return None
    for field in _OWNER_FIELDS:
        value = resource.get(field)
        if isinstance(value, dict):
            patient_id = parse_patient_reference(value.get('reference'))
            if patient_id:
                return patient_id
    return None


class CompartmentResolver:
    """Determines the owning patient of the resource a locator addresses."""

    def __init__(self, store):
        self.store = store

    def resolve(self, locator):
        """
        Resolve the compartment of `locator`.

        Raises:
            NoCompartment: the resource has no Patient owner reference
            ResourceNotFound: the resource does not exist upstream
            UpstreamUnavailable: the resource store failed or timed out
        """
        if not locator.has_resource_id:
            raise ValueError('Compartment resolution requires a resource id')

        if locator.resource_type == 'Patient':
            return CompartmentReference(normalize_id(locator.resource_id))

        resource = self.store.get_by_id(locator.resource_type, locator.resource_id)
        owner_id = extract_patient_owner(resource)
        if not owner_id:
            logger.warning(f'{locator.reference} carries no patient reference')
            raise NoCompartment()

        logger.debug(f'{locator.reference} belongs to compartment Patient/{owner_id}')
        return CompartmentReference(owner_id, source=resource)
