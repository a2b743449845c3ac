"""
Unit tests for :mod:`clinical_gateway.otp`.
"""

from typing import Any

import pytest
import requests
from requests import Response
from stubs.stub_otp import EngagementOtpStub

from clinical_gateway.errors import (
    RemoteError,
    RequestTimeoutError,
    ResponseParseError,
    ValidationError,
)
from clinical_gateway.otp import EngagementOtpVerifier

BASE_URL = "https://engagement.example.org/"


@pytest.fixture
def stub() -> EngagementOtpStub:
    stub = EngagementOtpStub()
    stub.issue("+254722000001", "123456")
    return stub


@pytest.fixture
def verifier(stub: EngagementOtpStub) -> EngagementOtpVerifier:
    return EngagementOtpVerifier(BASE_URL, post_method=stub.post)


def test_verify_accepts_the_issued_code(verifier: EngagementOtpVerifier) -> None:
    assert verifier.verify("+254722000001", "123456") is True


def test_verify_rejects_a_wrong_code(verifier: EngagementOtpVerifier) -> None:
    assert verifier.verify("+254722000001", "000000") is False


def test_verify_sends_the_normalised_number(
    verifier: EngagementOtpVerifier, stub: EngagementOtpStub
) -> None:
    assert verifier.verify("0722 000 001", "123456") is True
    assert stub.calls == [("+254722000001", "123456")]


def test_verify_posts_to_the_verification_endpoint() -> None:
    captured: dict[str, Any] = {}

    def _post(
        url: str, json: Any = None, timeout: Any = None  # noqa: A002
    ) -> Response:
        captured.update(url=url, json=json, timeout=timeout)
        return EngagementOtpStub().post(url, json=json, timeout=timeout)

    EngagementOtpVerifier(BASE_URL, timeout=4, post_method=_post).verify(
        "+254722000001", "1"
    )

    assert captured == {
        "url": "https://engagement.example.org/internal/verify_otp/",
        "json": {"msisdn": "+254722000001", "verificationCode": "1"},
        "timeout": 4,
    }


def test_verify_rejects_bad_numbers_before_calling(
    verifier: EngagementOtpVerifier, stub: EngagementOtpStub
) -> None:
    with pytest.raises(ValidationError):
        verifier.verify("not-a-phone", "123456")

    assert stub.calls == []


def test_verify_error_status_raises_remote_error(
    verifier: EngagementOtpVerifier,
) -> None:
    # The stub answers 400 when the code is missing
    with pytest.raises(RemoteError) as excinfo:
        verifier.verify("+254722000001", "")

    assert excinfo.value.status_code == 400


def test_verify_undecodable_body_raises_parse_error() -> None:
    def _post(url: str, **kwargs: Any) -> Response:
        response = Response()
        response.status_code = 200
        response._content = b"<html/>"  # noqa: SLF001
        return response

    with pytest.raises(ResponseParseError):
        EngagementOtpVerifier(BASE_URL, post_method=_post).verify(
            "+254722000001", "1"
        )


@pytest.mark.parametrize(
    ("raised", "expected"),
    [
        (requests.Timeout("slow"), RequestTimeoutError),
        (requests.ConnectionError("refused"), RemoteError),
    ],
)
def test_verify_transport_failures(
    raised: Exception, expected: type[Exception]
) -> None:
    def _post(url: str, **kwargs: Any) -> Response:
        raise raised

    with pytest.raises(expected):
        EngagementOtpVerifier(BASE_URL, post_method=_post).verify(
            "+254722000001", "1"
        )
