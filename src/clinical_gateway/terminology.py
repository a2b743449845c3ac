"""
Module: clinical_gateway.terminology

Read-only client for an OpenConceptLab (OCL) terminology server.

Usage:

    ocl = OclClient(base_url="https://api.openconceptlab.org", token="...")
    concept = ocl.get_concept("CIEL", "CIEL", "106")
    page = ocl.list_concepts("CIEL", "CIEL", q="cold", concept_class="Diagnosis")
"""

from collections.abc import Callable
from typing import Any, cast
from urllib.parse import parse_qs, urlsplit

import requests
import structlog

from clinical_gateway.common.common import JsonObject, require_identifiers
from clinical_gateway.errors import (
    ConfigurationError,
    RemoteError,
    RequestTimeoutError,
    ResponseParseError,
    ServerContractError,
)
from clinical_gateway.models import Page

logger = structlog.get_logger(__name__)

GetCallable = Callable[..., requests.Response]


def _page_cursor(link: str | None) -> str | None:
    """Return the ``page`` query value of a pagination link, if any."""
    if not link:
        return None
    query = urlsplit(link).query or link
    pages = parse_qs(query.lstrip("?")).get("page")
    return pages[0] if pages else None


class OclClient:
    """
    Client for the OCL concepts API.

    The token is sent as ``Authorization: Token <token>``.
    """

    DEFAULT_URL = "https://api.openconceptlab.org"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = 30,
        *,
        get_method: GetCallable = requests.get,
    ) -> None:
        """
        :param base_url: Base URL of the OCL API. Trailing slashes are stripped.
        :param token: OCL API token.
        :param timeout: Timeout in seconds for HTTP calls.
        :param get_method: Callable with the signature of :func:`requests.get`.
        :raises ConfigurationError: If the base URL or the token is empty.
        """
        if not base_url:
            raise ConfigurationError("OCL API base URL not set")
        if not token:
            raise ConfigurationError("OCL API token not set")

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.get_method = get_method

    def _build_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Token {self.token}",
        }

    def _get(
        self, operation: str, path: str, params: dict[str, str]
    ) -> tuple[Any, requests.Response]:
        url = f"{self.base_url}/{path}/"
        logger.debug("ocl_request", operation=operation, path=path)
        try:
            response = self.get_method(
                url,
                headers=self._build_headers(),
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as err:
            raise RequestTimeoutError(
                f"{operation}: no response from OCL within {self.timeout}s"
            ) from err
        except requests.RequestException as err:
            raise RemoteError(
                status_code=0, operation=operation, text=str(err)
            ) from err

        try:
            response.raise_for_status()
        except requests.HTTPError as err:
            raise RemoteError(
                status_code=response.status_code,
                operation=operation,
                body=response.text,
            ) from err

        try:
            return response.json(), response
        except ValueError as err:
            raise ResponseParseError(
                operation=operation,
                status_code=response.status_code,
                body=response.text,
            ) from err

    def get_concept(
        self,
        org: str,
        source: str,
        concept: str,
        include_mappings: bool = False,
        include_inverse_mappings: bool = False,
    ) -> JsonObject:
        """
        Fetch a single concept.

        Calls ``GET /orgs/{org}/sources/{source}/concepts/{concept}/``.

        :raises ServerContractError: If the body has no concept ``id``.
        """
        require_identifiers(org=org, source=source, concept=concept)
        params = {
            "includeMappings": str(include_mappings).lower(),
            "includeInverseMappings": str(include_inverse_mappings).lower(),
        }
        body, _ = self._get(
            "get_concept", f"orgs/{org}/sources/{source}/concepts/{concept}", params
        )
        if not isinstance(body, dict) or not body.get("id"):
            raise ServerContractError(
                f"failed to get {source} concept with id {concept}"
            )
        return cast("JsonObject", body)

    def list_concepts(
        self,
        org: str,
        source: str,
        *,
        verbose: bool = False,
        q: str | None = None,
        sort_asc: str | None = None,
        sort_desc: str | None = None,
        concept_class: str | None = None,
        data_type: str | None = None,
        locale: str | None = None,
        include_retired: bool | None = None,
        include_mappings: bool = False,
        include_inverse_mappings: bool = False,
        page: str | None = None,
        limit: int | None = None,
    ) -> Page[JsonObject]:
        """
        Search the concepts of one source.

        Calls ``GET /orgs/{org}/sources/{source}/concepts/``. The ``num_found``,
        ``next`` and ``previous`` response headers become the page's total and
        cursors.
        """
        require_identifiers(org=org, source=source)
        params: dict[str, str] = {"verbose": str(verbose).lower()}

        optional = {
            "q": q,
            "sortAsc": sort_asc,
            "sortDesc": sort_desc,
            "conceptClass": concept_class,
            "dataType": data_type,
            "locale": locale,
            "page": page,
        }
        params.update({k: v for k, v in optional.items() if v is not None})

        if limit is not None:
            params["limit"] = str(limit)
        if include_retired is not None:
            params["includeRetired"] = "1" if include_retired else "0"
        if include_mappings:
            params["includeMappings"] = "true"
        if include_inverse_mappings:
            params["includeReverseMappings"] = "true"

        body, response = self._get(
            "list_concepts", f"orgs/{org}/sources/{source}/concepts", params
        )
        if not isinstance(body, list) or not all(isinstance(c, dict) for c in body):
            raise ServerContractError("OCL concept listing is not a list of concepts")

        num_found = response.headers.get("num_found")
        try:
            total = int(num_found) if num_found is not None else None
        except ValueError as err:
            raise ServerContractError(
                f"OCL num_found header is not a number: {num_found!r}"
            ) from err

        next_cursor = _page_cursor(response.headers.get("next"))
        return Page(
            items=cast("list[JsonObject]", body),
            next_cursor=next_cursor,
            has_more=next_cursor is not None,
            total=total,
            previous_cursor=_page_cursor(response.headers.get("previous")),
        )
