"""FHIR data types and resources."""

from fhir.audit_event import AuditEvent, AuditEventAgent, AuditEventEntity
from fhir.bundle import Bundle, BundleEntry, BundleLink
from fhir.codeable_concept import CodeableConcept, Coding
from fhir.encounter import Encounter
from fhir.episode_of_care import EpisodeOfCare
from fhir.identifier import Identifier
from fhir.operation_outcome import (
    IssueDetails,
    OperationOutcome,
    OperationOutcomeIssue,
)
from fhir.organization import Organization
from fhir.patch import PatchOperation
from fhir.period import Period
from fhir.reference import Reference

__all__ = [
    "AuditEvent",
    "AuditEventAgent",
    "AuditEventEntity",
    "Bundle",
    "BundleEntry",
    "BundleLink",
    "CodeableConcept",
    "Coding",
    "Encounter",
    "EpisodeOfCare",
    "Identifier",
    "IssueDetails",
    "OperationOutcome",
    "OperationOutcomeIssue",
    "Organization",
    "PatchOperation",
    "Period",
    "Reference",
]
