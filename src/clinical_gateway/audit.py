"""
Append-only audit trail for emergency ("break-glass") access.

Each invocation is written to the FHIR store as its own ``AuditEvent`` before the
emergency episode is created, so the record survives even if episode creation
fails afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import structlog
from fhir import AuditEvent

from clinical_gateway.common.common import fhir_now, make_reference
from clinical_gateway.errors import ServerContractError
from clinical_gateway.resource_gateway import FhirStoreClient, decode_json

logger = structlog.get_logger(__name__)

AUDIT_EVENT_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/audit-event-type"
PURPOSE_OF_USE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ActReason"
# FHIR network type 5 is a telephone number
NETWORK_TYPE_PHONE = "5"


@dataclass(frozen=True)
class BreakGlassAuditEvent:
    """
    Who invoked emergency access to which patient, from which provider.

    Phone numbers are expected in normalised form.
    """

    practitioner_uid: str
    patient_id: str
    provider_code: str
    provider_phone: str
    patient_phone: str
    full_access: bool
    recorded: str = field(default_factory=fhir_now)

    def to_fhir(self) -> AuditEvent:
        return {
            "resourceType": "AuditEvent",
            "type": {
                "system": AUDIT_EVENT_TYPE_SYSTEM,
                "code": "rest",
                "display": "Break glass episode start",
            },
            "action": "C",
            "recorded": self.recorded,
            "outcome": "0",
            "purposeOfEvent": [
                {
                    "coding": [
                        {
                            "system": PURPOSE_OF_USE_SYSTEM,
                            "code": "ETREAT",
                            "display": "Emergency Treatment",
                        }
                    ]
                }
            ],
            "agent": [
                {
                    "who": {"identifier": {"value": self.practitioner_uid}},
                    "requestor": True,
                    "network": {
                        "address": self.provider_phone,
                        "type": NETWORK_TYPE_PHONE,
                    },
                }
            ],
            "source": {"observer": {"display": self.provider_code}},
            "entity": [
                {
                    "what": {"reference": make_reference("Patient", self.patient_id)},
                    "detail": [
                        {"type": "patient_phone", "valueString": self.patient_phone},
                        {"type": "provider_code", "valueString": self.provider_code},
                        {
                            "type": "full_access",
                            "valueString": str(self.full_access).lower(),
                        },
                    ],
                }
            ],
        }


class AuditSink(Protocol):
    def record(self, event: BreakGlassAuditEvent) -> str: ...


class FhirAuditSink:
    """Stores audit events as FHIR ``AuditEvent`` resources."""

    def __init__(self, gateway: FhirStoreClient) -> None:
        self.gateway = gateway

    def record(self, event: BreakGlassAuditEvent) -> str:
        """
        Write ``event`` to the store.

        :returns: The reference of the stored record, e.g. ``"AuditEvent/123"``.
        """
        body = self.gateway.create("AuditEvent", event.to_fhir())
        stored = decode_json(body, "create")
        audit_id = stored.get("id")
        if not isinstance(audit_id, str) or not audit_id:
            raise ServerContractError("server error: created audit event has no id")

        reference = make_reference("AuditEvent", audit_id)
        logger.info(
            "break_glass_audited",
            audit_event=reference,
            practitioner_uid=event.practitioner_uid,
            patient_id=event.patient_id,
            provider_code=event.provider_code,
        )
        return reference
