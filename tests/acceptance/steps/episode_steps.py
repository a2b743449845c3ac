"""Step definitions for the episode of care lifecycle feature."""

from flask.testing import FlaskClient
from pytest_bdd import given, parsers, then, when

from tests.acceptance.conftest import ResponseContext
from tests.conftest import (
    PATIENT_OTP,
    PATIENT_PHONE,
    PROVIDER_OTP,
    PROVIDER_PHONE,
    Backends,
)

PATIENT_ID = "acceptance-patient"


def _start_episode(
    client: FlaskClient, response_context: ResponseContext, provider: str, pin: str
) -> None:
    response_context.response = client.post(
        "/episodes/otp",
        json={
            "patientId": PATIENT_ID,
            "providerCode": provider,
            "msisdn": PATIENT_PHONE,
            "otp": pin,
        },
    )
    if response_context.response.status_code == 201:
        response_context.episode_id = response_context.json()["episode"]["id"]


@given("the gateway is running")
def check_gateway_is_running(client: FlaskClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200


@given(
    parsers.cfparse('provider "{provider}" is registered with the engagement service')
)
def register_provider(backends: Backends, provider: str) -> None:
    backends.otp.issue(PROVIDER_PHONE, PROVIDER_OTP)


@given(
    parsers.cfparse('the patient has granted limited access to provider "{provider}"')
)
def granted_limited_access(
    client: FlaskClient, response_context: ResponseContext, provider: str
) -> None:
    _start_episode(client, response_context, provider, PATIENT_OTP)
    assert response_context.episode_id is not None


@given(parsers.cfparse("{count:d} encounters have been recorded"))
def record_encounters(
    client: FlaskClient, response_context: ResponseContext, count: int
) -> None:
    for _ in range(count):
        response = client.post(f"/episodes/{response_context.episode_id}/encounters")
        assert response.status_code == 201


@when(parsers.cfparse('the patient confirms PIN "{pin}" for provider "{provider}"'))
def confirm_pin(
    client: FlaskClient, response_context: ResponseContext, pin: str, provider: str
) -> None:
    _start_episode(client, response_context, provider, pin)


@when(parsers.cfparse('the patient confirms PIN "{pin}" to upgrade the episode'))
def confirm_upgrade(
    client: FlaskClient, response_context: ResponseContext, pin: str
) -> None:
    response_context.response = client.post(
        f"/episodes/{response_context.episode_id}/upgrade",
        json={"otp": pin, "msisdn": PATIENT_PHONE},
    )


@when("the episode is ended")
def end_episode(client: FlaskClient, response_context: ResponseContext) -> None:
    response_context.response = client.post(
        f"/episodes/{response_context.episode_id}/end"
    )


@when(
    parsers.cfparse(
        'practitioner "{practitioner}" breaks the glass for provider "{provider}"'
    )
)
def break_glass(
    client: FlaskClient,
    response_context: ResponseContext,
    practitioner: str,
    provider: str,
) -> None:
    response_context.response = client.post(
        "/episodes/break-glass",
        json={
            "practitionerUid": practitioner,
            "patientId": PATIENT_ID,
            "providerCode": provider,
            "otp": PROVIDER_OTP,
            "providerPhone": PROVIDER_PHONE,
            "patientPhone": PATIENT_PHONE,
        },
    )


@then(
    parsers.cfparse(
        "the response status code should be {expected_status:d}",
        extra_types={"expected_status": int},
    )
)
def check_status_code(response_context: ResponseContext, expected_status: int) -> None:
    assert response_context.response is not None, "Response has not been set."
    assert response_context.response.status_code == expected_status, (
        f"Expected status {expected_status}, "
        f"got {response_context.response.status_code}"
    )


@then(parsers.cfparse('the episode state should be "{state}"'))
def check_episode_state(response_context: ResponseContext, state: str) -> None:
    assert response_context.json()["episode"]["state"] == state


@then("no episode should have been stored")
def check_no_episode(backends: Backends) -> None:
    assert backends.fhir_store.resources("EpisodeOfCare") == []


@then(
    parsers.cfparse("starting another encounter should fail with status {status:d}")
)
def check_encounter_refused(
    client: FlaskClient, response_context: ResponseContext, status: int
) -> None:
    response = client.post(f"/episodes/{response_context.episode_id}/encounters")
    assert response.status_code == status


@then(
    parsers.cfparse(
        'the break-glass access should be audited for practitioner "{practitioner}"'
    )
)
def check_break_glass_audited(backends: Backends, practitioner: str) -> None:
    audits = backends.fhir_store.resources("AuditEvent")
    assert len(audits) == 1
    assert audits[0]["agent"][0]["who"]["identifier"]["value"] == practitioner
