"""Pytest configuration and shared fixtures for clinical gateway tests."""

from typing import Any

import pytest
from stubs.stub_fhir_store import FhirStoreStub
from stubs.stub_otp import EngagementOtpStub

from clinical_gateway.audit import FhirAuditSink
from clinical_gateway.credentials import StaticTokenSource
from clinical_gateway.episodes import EpisodeController
from clinical_gateway.otp import EngagementOtpVerifier
from clinical_gateway.resource_gateway import FhirStoreClient
from clinical_gateway.timeline import TimelineAggregator

PATIENT_PHONE = "+254722000001"
PATIENT_OTP = "123456"
PROVIDER_PHONE = "+254733000002"
PROVIDER_OTP = "654321"
PROVIDER_CODE = "PROV-001"


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.published.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]


@pytest.fixture
def fhir_store(request: pytest.FixtureRequest) -> FhirStoreStub:
    """
    In-memory store. Parametrize indirectly with a page size to make the store
    page its search results.
    """
    return FhirStoreStub(default_page_size=getattr(request, "param", None))


@pytest.fixture
def gateway(fhir_store: FhirStoreStub) -> FhirStoreClient:
    return FhirStoreClient(
        FhirStoreStub.BASE_URL,
        StaticTokenSource("test-token"),
        request_method=fhir_store.request,
    )


@pytest.fixture
def otp_stub() -> EngagementOtpStub:
    stub = EngagementOtpStub()
    stub.issue(PATIENT_PHONE, PATIENT_OTP)
    stub.issue(PROVIDER_PHONE, PROVIDER_OTP)
    return stub


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def controller(
    gateway: FhirStoreClient,
    otp_stub: EngagementOtpStub,
    publisher: RecordingPublisher,
) -> EpisodeController:
    verifier = EngagementOtpVerifier(
        "https://engagement.example.org", post_method=otp_stub.post
    )
    return EpisodeController(gateway, verifier, FhirAuditSink(gateway), publisher)


@pytest.fixture
def aggregator(gateway: FhirStoreClient) -> TimelineAggregator:
    return TimelineAggregator(gateway)


@pytest.fixture
def patient(fhir_store: FhirStoreStub) -> dict[str, Any]:
    return fhir_store.seed(
        {
            "resourceType": "Patient",
            "id": "patient-1",
            "name": [{"text": "Jane Wanjiru"}],
            "telecom": [{"system": "phone", "value": PATIENT_PHONE}],
        }
    )


def seed_visit_resources(
    fhir_store: FhirStoreStub, encounter_id: str, patient_id: str
) -> None:
    """Record one resource of every visit summary type against an encounter."""
    encounter = {"reference": f"Encounter/{encounter_id}"}
    subject = {"reference": f"Patient/{patient_id}"}
    for resource in (
        {
            "resourceType": "Condition",
            "code": {"text": "Pulmonary Tuberculosis"},
            "clinicalStatus": {"coding": [{"code": "active"}]},
            "verificationStatus": {"coding": [{"code": "confirmed"}]},
            "category": [{"coding": [{"code": "problem-list-item"}]}],
        },
        {"resourceType": "Observation", "status": "final", "code": {"text": "Temp"}},
        {"resourceType": "Composition", "status": "final", "title": "Visit note"},
        {"resourceType": "ServiceRequest", "status": "active", "intent": "order"},
        {
            "resourceType": "MedicationRequest",
            "status": "active",
            "intent": "order",
        },
        {
            "resourceType": "AllergyIntolerance",
            "code": {"text": "Penicillin"},
            "clinicalStatus": {"coding": [{"code": "active"}]},
            "verificationStatus": {"coding": [{"code": "confirmed"}]},
            "type": "allergy",
            "criticality": "high",
            "patient": subject,
        },
    ):
        document: dict[str, Any] = {**resource, "encounter": encounter}
        if document["resourceType"] != "AllergyIntolerance":
            document["subject"] = subject
        fhir_store.seed(document)
