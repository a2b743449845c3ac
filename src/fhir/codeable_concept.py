"""FHIR Coding and CodeableConcept types."""

from typing import NotRequired, TypedDict


class Coding(TypedDict):
    code: str
    system: NotRequired[str]
    version: NotRequired[str]
    display: NotRequired[str]
    userSelected: NotRequired[bool]


class CodeableConcept(TypedDict):
    text: NotRequired[str]
    coding: NotRequired[list[Coding]]
