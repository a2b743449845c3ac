"""
Bearer credential sources for outgoing calls to the FHIR store.

The gateway asks its credential source for a token on every call. Any caching
happens here, never in the gateway.
"""

import threading
import uuid
from collections.abc import Callable
from time import time
from typing import Protocol, cast

import jwt
import requests
import structlog

from clinical_gateway.errors import AuthError

logger = structlog.get_logger(__name__)

PostCallable = Callable[..., requests.Response]

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Refresh this many seconds before the issued token is due to expire
EXPIRY_MARGIN = 30


class TokenSource(Protocol):
    def get_token(self) -> str: ...


class StaticTokenSource:
    """Hands out a fixed, externally issued bearer token."""

    def __init__(self, token: str) -> None:
        self.token = token

    def get_token(self) -> str:
        if not self.token:
            raise AuthError("no bearer token configured for the FHIR store")
        return self.token


def get_key_id(path_to_private_key: str) -> str:
    return path_to_private_key.split("/")[-1].split(".pem")[0]


def sign_jwt(
    api_key: str, private_key: str, key_id: str, auth_token_url: str
) -> str:
    five_minutes = int(time()) + 300
    claims = {
        "sub": api_key,
        "iss": api_key,
        "jti": str(uuid.uuid4()),
        "aud": auth_token_url,
        "exp": five_minutes,
    }

    additional_headers = {"kid": key_id}

    return jwt.encode(
        claims, private_key, algorithm="RS512", headers=additional_headers
    )


class ClientCredentialsTokenSource:
    """
    Obtains access tokens with a signed JWT client assertion.

    Usage:

        source = ClientCredentialsTokenSource.from_key_file(
            api_key="APP_KEY",
            path_to_private_key=".keys/my-key.pem",
            token_url="https://auth.example.org/oauth2/token",
        )
        token = source.get_token()

    The private key file is expected to be named ``<key_id>.pem``.
    """

    def __init__(
        self,
        api_key: str,
        private_key: str,
        key_id: str,
        token_url: str,
        *,
        timeout: int = 10,
        post_method: PostCallable = requests.post,
    ) -> None:
        """
        :param api_key: Application API key, used as JWT issuer and subject.
        :param private_key: PEM encoded RSA private key used to sign the assertion.
        :param key_id: Key identifier sent in the JWT ``kid`` header.
        :param token_url: OAuth2 token endpoint, also the JWT audience.
        :param timeout: Timeout in seconds for the token request.
        :param post_method: Callable used to send the token request.
        """
        self.api_key = api_key
        self.private_key = private_key
        self.key_id = key_id
        self.token_url = token_url
        self.timeout = timeout
        self.post_method = post_method

        self._token: str | None = None
        self._expires_at = 0.0
        # One refresh at a time; concurrent callers reuse its token
        self._lock = threading.Lock()

    @classmethod
    def from_key_file(
        cls, api_key: str, path_to_private_key: str, token_url: str, **kwargs: object
    ) -> "ClientCredentialsTokenSource":
        with open(path_to_private_key) as f:
            private_key = f.read()
        return cls(
            api_key,
            private_key,
            get_key_id(path_to_private_key),
            token_url,
            **kwargs,  # type: ignore[arg-type]
        )

    def get_token(self) -> str:
        with self._lock:
            if self._token and time() < self._expires_at:
                return self._token

            signed_jwt = sign_jwt(
                self.api_key, self.private_key, self.key_id, self.token_url
            )
            response = self._request_auth_token(signed_jwt)
            self._token, expires_in = self._handle_auth_token_response(response)
            self._expires_at = time() + max(expires_in - EXPIRY_MARGIN, 0)

            logger.debug("auth_token_issued", expires_in=expires_in)
            return self._token

    def _request_auth_token(self, signed_jwt: str) -> requests.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        data = {
            "grant_type": "client_credentials",
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": signed_jwt,
        }

        try:
            return self.post_method(
                self.token_url, headers=headers, data=data, timeout=self.timeout
            )
        except requests.RequestException as err:
            raise AuthError(f"error obtaining auth token: {err}") from err

    @staticmethod
    def _handle_auth_token_response(response: requests.Response) -> tuple[str, int]:
        try:
            response.raise_for_status()
        except requests.HTTPError as err:
            raise AuthError(
                f"error obtaining auth token: {err}: {response.text}"
            ) from err

        try:
            token_response = cast("dict[str, object]", response.json())
        except ValueError as err:
            raise AuthError("auth token response is not valid JSON") from err

        access_token = token_response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError("auth token response has no access_token")

        try:
            expires_in = int(cast("int | str", token_response.get("expires_in", 0)))
        except ValueError:
            expires_in = 0
        return access_token, expires_in
