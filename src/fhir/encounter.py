"""FHIR Encounter resource."""

from typing import NotRequired, TypedDict

from fhir.codeable_concept import Coding
from fhir.period import Period
from fhir.reference import Reference

# Functional form because "class" is a Python keyword.
Encounter = TypedDict(
    "Encounter",
    {
        "resourceType": str,
        "status": str,
        "class": Coding,
        "subject": Reference,
        "episodeOfCare": list[Reference],
        "period": Period,
        "id": NotRequired[str],
        "serviceProvider": NotRequired[Reference],
    },
)
