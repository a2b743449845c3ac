"""
One-time PIN verification against the engagement service.

The episode controller only needs a pass/fail answer, so any verifier with a
``verify(msisdn, otp) -> bool`` method can stand in for the HTTP client below.
"""

from collections.abc import Callable
from typing import Protocol, cast

import requests
import structlog

from clinical_gateway.common.common import normalize_msisdn
from clinical_gateway.errors import RemoteError, RequestTimeoutError, ResponseParseError

logger = structlog.get_logger(__name__)

PostCallable = Callable[..., requests.Response]

VERIFY_OTP_ENDPOINT = "internal/verify_otp/"


class OtpVerifier(Protocol):
    def verify(self, msisdn: str, otp: str) -> bool: ...


class EngagementOtpVerifier:
    """
    Client for the engagement service's OTP verification endpoint.

    Calls ``POST internal/verify_otp/`` with the phone number and code and reads
    back ``{"IsVerified": bool}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int = 10,
        post_method: PostCallable = requests.post,
    ) -> None:
        """
        :param base_url: Base URL of the engagement service.
        :param timeout: Timeout in seconds for the verification call.
        :param post_method: Callable with the signature of :func:`requests.post`.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.post_method = post_method

    def verify(self, msisdn: str, otp: str) -> bool:
        """
        Check ``otp`` against the code issued to ``msisdn``.

        :raises ValidationError: If the phone number cannot be normalised.
        :raises RemoteError: If the service answers with a non-200 status.
        """
        normalized = normalize_msisdn(msisdn)
        url = f"{self.base_url}/{VERIFY_OTP_ENDPOINT}"

        try:
            response = self.post_method(
                url,
                json={"msisdn": normalized, "verificationCode": otp},
                timeout=self.timeout,
            )
        except requests.Timeout as err:
            raise RequestTimeoutError("OTP verification timed out") from err
        except requests.RequestException as err:
            raise RemoteError(
                status_code=0, operation="verify_otp", text=str(err)
            ) from err

        try:
            response.raise_for_status()
        except requests.HTTPError as err:
            raise RemoteError(
                status_code=response.status_code,
                operation="verify_otp",
                body=response.text,
            ) from err

        try:
            body = cast("dict[str, object]", response.json())
        except ValueError as err:
            raise ResponseParseError(
                operation="verify_otp",
                status_code=response.status_code,
                body=response.text,
            ) from err

        verified = body.get("IsVerified") is True
        logger.debug("otp_verified", msisdn=normalized, verified=verified)
        return verified
