"""FHIR Reference type."""

from typing import NotRequired, TypedDict

from fhir.identifier import Identifier


class Reference(TypedDict):
    reference: str
    type: NotRequired[str]
    display: NotRequired[str]
    identifier: NotRequired[Identifier]
