"""Best-effort removal of directly identifying keys from a JSON-like tree.

This is a key-name filter, not a certified anonymisation: only keys whose
lower-cased name appears in ``IDENTIFYING_KEYS`` are dropped. Values under
other keys (free text included) pass through untouched.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

IDENTIFYING_KEYS: frozenset[str] = frozenset(
    key.lower()
    for key in (
        # names
        "name", "firstName", "lastName", "patientName", "participantName",
        # record identifiers
        "mrn", "medicalRecordNumber", "identifier", "id",
        # full dates of birth
        "dob", "birthDate", "dateOfBirth",
        # street-level location; zipCode is kept for trial proximity
        "address", "streetAddress", "city", "county", "postalCode",
        # contact
        "phone", "telephone", "email",
        "ssn", "socialSecurityNumber",
        "healthPlanBeneficiaryNumber", "accountNumber", "certificateLicenseNumber",
        "vehicleIdentifier", "deviceIdentifier",
        "url", "ipAddress",
        "biometricIdentifier", "fingerprint", "voiceprint",
        "photo", "image",
    )
)


def deidentify(value: Any, deny: frozenset[str] = IDENTIFYING_KEYS) -> Any:
    """Return a new tree with every denied key removed at every depth.

    Objects are rebuilt key by key, arrays element by element (length and
    order preserved), scalars are returned as they are. The input is never
    mutated.
    """
    if isinstance(value, dict):
        clean: dict[str, Any] = {}
        for key, child in value.items():
            if str(key).lower() in deny:
                logger.debug("De-identifying: removing key %r", key)
                continue
            clean[key] = deidentify(child, deny)
        return clean
    if isinstance(value, (list, tuple)):
        return [deidentify(item, deny) for item in value]
    return value
