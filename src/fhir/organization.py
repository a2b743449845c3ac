"""FHIR Organization resource."""

from typing import NotRequired, TypedDict

from fhir.identifier import Identifier


class Organization(TypedDict):
    resourceType: str
    name: str
    identifier: list[Identifier]
    active: NotRequired[bool]
    id: NotRequired[str]
