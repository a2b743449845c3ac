"""JSON Patch operations, as accepted by FHIR PATCH."""

from typing import Any, Literal, NotRequired, TypedDict


class PatchOperation(TypedDict):
    op: Literal["add", "remove", "replace"]
    path: str
    value: NotRequired[Any]
