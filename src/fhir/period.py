"""FHIR Period type."""

from typing import NotRequired, TypedDict


class Period(TypedDict):
    start: str
    end: NotRequired[str]
