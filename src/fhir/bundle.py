"""FHIR Bundle resource."""

from typing import Any, NotRequired, TypedDict


class BundleLink(TypedDict):
    relation: str
    url: str


class BundleEntry(TypedDict):
    fullUrl: str
    resource: dict[str, Any]
    search: dict[str, str]


class Bundle(TypedDict):
    resourceType: str
    type: str
    total: int
    link: list[BundleLink]
    entry: NotRequired[list[BundleEntry]]
