"""FHIR AuditEvent resource, limited to the elements used for break-glass records."""

from typing import Any, NotRequired, TypedDict

from fhir.codeable_concept import CodeableConcept, Coding
from fhir.identifier import Identifier
from fhir.reference import Reference


class AuditEventNetwork(TypedDict):
    address: str
    type: str


class AuditEventWho(TypedDict):
    identifier: Identifier


class AuditEventAgent(TypedDict):
    who: AuditEventWho
    requestor: bool
    network: NotRequired[AuditEventNetwork]


class AuditEventSource(TypedDict):
    observer: dict[str, Any]


class AuditEventDetail(TypedDict):
    type: str
    valueString: str


class AuditEventEntity(TypedDict):
    what: Reference
    detail: NotRequired[list[AuditEventDetail]]


class AuditEvent(TypedDict):
    resourceType: str
    type: Coding
    action: str
    recorded: str
    outcome: str
    purposeOfEvent: list[CodeableConcept]
    agent: list[AuditEventAgent]
    source: AuditEventSource
    entity: list[AuditEventEntity]
    id: NotRequired[str]
