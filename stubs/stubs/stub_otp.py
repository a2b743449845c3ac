"""
In-memory engagement service stub, implementing only ``POST internal/verify_otp/``.
"""

from __future__ import annotations

import json
from http.client import responses as http_responses
from typing import Any

from requests import Response
from requests.structures import CaseInsensitiveDict


def _create_response(status_code: int, json_data: dict[str, Any]) -> Response:
    response = Response()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict({"Content-Type": "application/json"})
    response._content = json.dumps(json_data).encode("utf-8")  # noqa: SLF001
    response.encoding = "utf-8"
    response.reason = http_responses.get(status_code, "Unknown")
    return response


class EngagementOtpStub:
    """
    Verifies codes issued with :meth:`issue`. Every call is recorded in
    :attr:`calls` as ``(msisdn, otp)``.
    """

    def __init__(self) -> None:
        # Internal store: normalised msisdn -> currently valid code
        self._codes: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []

    def issue(self, msisdn: str, otp: str) -> None:
        self._codes[msisdn] = otp

    def post(
        self,
        url: str,  # NOQA ARG002 (maintain signature)
        json: dict[str, Any] | None = None,  # noqa: A002
        timeout: Any = None,  # NOQA ARG002 (maintain signature)
    ) -> Response:
        payload = json or {}
        msisdn = str(payload.get("msisdn", ""))
        otp = str(payload.get("verificationCode", ""))
        self.calls.append((msisdn, otp))

        if not msisdn or not otp:
            return _create_response(400, {"error": "msisdn and code are required"})
        return _create_response(200, {"IsVerified": self._codes.get(msisdn) == otp})
