"""Integration tests driving a running gateway over HTTP, backed by in-memory stubs."""

from __future__ import annotations

from typing import Any

import requests

from tests.conftest import (
    PATIENT_OTP,
    PATIENT_PHONE,
    PROVIDER_CODE,
    PROVIDER_OTP,
    PROVIDER_PHONE,
    Backends,
)

TIMEOUT = 5


def _post(url: str, body: dict[str, Any] | None = None) -> requests.Response:
    return requests.post(url, json=body or {}, timeout=TIMEOUT)


class TestEpisodeLifecycle:
    """A patient consents, is seen twice, is upgraded, and the episode is closed."""

    def test_full_lifecycle(self, provider_url: str, live_backends: Backends) -> None:
        started = _post(
            f"{provider_url}/episodes/otp",
            {
                "patientId": "integration-patient",
                "providerCode": PROVIDER_CODE,
                "msisdn": "0722 000 001",
                "otp": PATIENT_OTP,
            },
        )
        assert started.status_code == 201
        episode = started.json()["episode"]
        assert episode["state"] == "active-limited"

        encounters = [
            _post(f"{provider_url}/episodes/{episode['id']}/encounters").json()[
                "encounterId"
            ]
            for _ in range(2)
        ]

        upgraded = _post(
            f"{provider_url}/episodes/{episode['id']}/upgrade",
            {"otp": PATIENT_OTP, "msisdn": PATIENT_PHONE},
        )
        assert upgraded.status_code == 200
        assert upgraded.json()["episode"]["state"] == "active-full"
        assert upgraded.json()["totalVisits"] == 2

        timeline = requests.get(
            f"{provider_url}/episodes/{episode['id']}/timeline", timeout=TIMEOUT
        )
        assert timeline.status_code == 200
        newest_first = [
            view["resources"]["Encounter"][0]["id"]
            for view in timeline.json()["timeline"]
        ]
        assert newest_first == encounters[::-1]

        ended = _post(f"{provider_url}/episodes/{episode['id']}/end")
        assert ended.json() == {"ended": True}

        for encounter_id in encounters:
            stored = live_backends.fhir_store.get("Encounter", encounter_id)
            assert stored is not None
            assert stored["status"] == "finished"

        after_end = requests.get(
            f"{provider_url}/episodes/{episode['id']}/timeline", timeout=TIMEOUT
        )
        assert after_end.status_code == 409

    def test_break_glass_is_audited(
        self, provider_url: str, live_backends: Backends
    ) -> None:
        audits_before = len(live_backends.fhir_store.resources("AuditEvent"))

        response = _post(
            f"{provider_url}/episodes/break-glass",
            {
                "practitionerUid": "integration-practitioner",
                "patientId": "integration-patient-2",
                "providerCode": PROVIDER_CODE,
                "otp": PROVIDER_OTP,
                "providerPhone": PROVIDER_PHONE,
                "patientPhone": PATIENT_PHONE,
                "fullAccess": True,
            },
        )

        assert response.status_code == 201
        assert response.json()["episode"]["accessLevel"] == "emergency"
        audits = live_backends.fhir_store.resources("AuditEvent")
        assert len(audits) == audits_before + 1
        assert audits[-1]["agent"][0]["who"]["identifier"]["value"] == (
            "integration-practitioner"
        )

    def test_errors_are_operation_outcomes(self, provider_url: str) -> None:
        response = _post(
            f"{provider_url}/episodes/otp",
            {
                "patientId": "integration-patient",
                "providerCode": PROVIDER_CODE,
                "msisdn": PATIENT_PHONE,
                "otp": "not-the-code",
            },
        )

        assert response.status_code == 401
        assert response.headers["Content-Type"].startswith("application/json")
        assert response.json()["resourceType"] == "OperationOutcome"


def test_concept_lookup(provider_url: str) -> None:
    response = requests.get(f"{provider_url}/concepts/CIEL/CIEL/42", timeout=TIMEOUT)

    assert response.status_code == 200
    assert response.json()["display_name"] == "Pulmonary Tuberculosis"
