"""FHIR OperationOutcome resource."""

from typing import NotRequired, TypedDict


class IssueDetails(TypedDict):
    text: str


class OperationOutcomeIssue(TypedDict):
    severity: str
    code: str
    diagnostics: NotRequired[str]
    details: NotRequired[IssueDetails]


class OperationOutcome(TypedDict):
    resourceType: str
    issue: list[OperationOutcomeIssue]
