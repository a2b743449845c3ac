"""FHIR EpisodeOfCare resource."""

from typing import Any, NotRequired, TypedDict

from fhir.codeable_concept import CodeableConcept
from fhir.period import Period
from fhir.reference import Reference


class EpisodeOfCare(TypedDict):
    resourceType: str
    status: str
    type: list[CodeableConcept]
    patient: Reference
    managingOrganization: Reference
    period: Period
    id: NotRequired[str]
    extension: NotRequired[list[dict[str, Any]]]
