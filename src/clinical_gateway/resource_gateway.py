"""
Module: clinical_gateway.resource_gateway

Generic create/read/update/patch/delete and search client for a REST FHIR store.

The client does not cache anything: every call goes to the store, which is the
single source of truth. Search responses are checked against the ``Bundle``
envelope before any entry is handed to the caller.

Usage:

    client = FhirStoreClient.for_dataset(
        api_root="https://healthcare.googleapis.com/v1",
        project="my-project",
        location="europe-west4",
        dataset_id="clinical",
        fhir_store_id="episodes",
        token_source=StaticTokenSource("ya29..."),
    )
    conditions = client.search("Condition", {"subject": "Patient/123"})
"""

import json
from collections.abc import Callable, Mapping, Sequence
from typing import Any, cast

import requests
import structlog
from fhir import Bundle, PatchOperation

from clinical_gateway.common.common import JsonObject
from clinical_gateway.credentials import TokenSource
from clinical_gateway.errors import (
    NotFoundError,
    RemoteError,
    RequestTimeoutError,
    ResponseParseError,
    ServerContractError,
    ValidationError,
)
from clinical_gateway.models import Page

logger = structlog.get_logger(__name__)

RequestCallable = Callable[..., requests.Response]

FHIR_CONTENT_TYPE = "application/fhir+json;charset=utf-8"
PATCH_CONTENT_TYPE = "application/json-patch+json"
DEFAULT_LANGUAGE = "EN"

BUNDLE_KEYS = ("resourceType", "type", "total", "link")
ENTRY_KEYS = ("fullUrl", "resource", "search")


def decode_json(body: bytes, operation: str, status_code: int = 200) -> JsonObject:
    """
    Decode a response body that must hold a single JSON object.

    :raises ResponseParseError: If the body is not JSON.
    :raises ServerContractError: If the body is JSON but not an object.
    """
    try:
        decoded = json.loads(body)
    except ValueError as err:
        raise ResponseParseError(
            operation=operation,
            status_code=status_code,
            body=body.decode("utf-8", errors="replace"),
        ) from err
    if not isinstance(decoded, dict):
        raise ServerContractError(
            f"server error: {operation} response is not a JSON object"
        )
    return cast("JsonObject", decoded)


def _outcome_fields(document: Any) -> tuple[str | None, str | None]:
    """
    Pull ``issue[0].details.text`` and ``issue[0].diagnostics`` out of an
    ``OperationOutcome``.

    :raises ValueError: If the document does not have the outcome shape.
    """
    if not isinstance(document, dict):
        raise ValueError("error body is not a JSON object")
    issues = document.get("issue")
    if not isinstance(issues, list) or not issues or not isinstance(issues[0], dict):
        raise ValueError("error body has no issues")
    issue = issues[0]
    details = issue.get("details") or {}
    if not isinstance(details, dict):
        raise ValueError("issue details is not an object")
    text = details.get("text")
    diagnostics = issue.get("diagnostics")
    return (
        text if isinstance(text, str) else None,
        diagnostics if isinstance(diagnostics, str) else None,
    )


def validate_bundle(document: JsonObject) -> list[JsonObject]:
    """
    Check a decoded search response against the ``searchset`` Bundle envelope and
    return the resources of its entries, in order.

    An absent ``entry`` key and an empty ``entry`` list both mean no results.

    :raises ServerContractError: If any mandatory key is missing or holds the
        wrong value.
    """
    for key in BUNDLE_KEYS:
        if key not in document:
            raise ServerContractError(
                f"server error: mandatory search result key {key} not found"
            )
    if document["resourceType"] != "Bundle":
        raise ServerContractError(
            "server error: the resourceType value is not 'Bundle' as expected"
        )
    if document["type"] != "searchset":
        raise ServerContractError(
            "server error: the type value is not 'searchset' as expected"
        )

    entries = document.get("entry", [])
    if not isinstance(entries, list):
        raise ServerContractError("server error: entries is not a list")

    resources: list[JsonObject] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ServerContractError("server error: search entry is not an object")
        for key in ENTRY_KEYS:
            if key not in entry:
                raise ServerContractError(
                    f"server error: FHIR search entry does not have key '{key}'"
                )
        resource = entry["resource"]
        if not isinstance(resource, dict):
            raise ServerContractError("server error: result entry is not a map")
        resources.append(cast("JsonObject", resource))
    return resources


def _next_link(document: Bundle) -> str | None:
    for link in document.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next":
            return link.get("url")
    return None


class FhirStoreClient:
    """
    Client for a FHIR store reached over REST and JSON.

    Every call asks ``token_source`` for a bearer token. A failure to obtain one
    surfaces as :class:`~clinical_gateway.errors.AuthError` and is not retried.
    """

    def __init__(
        self,
        base_url: str,
        token_source: TokenSource,
        *,
        timeout: int = 10,
        request_method: RequestCallable = requests.request,
    ) -> None:
        """
        :param base_url: Base URL of the store, ending in ``/fhir``. Trailing
            slashes are stripped.
        :param token_source: Source of bearer tokens.
        :param timeout: Timeout in seconds for each HTTP call.
        :param request_method: Callable with the signature of
            :func:`requests.request`, used to send every request.
        """
        self.base_url = base_url.rstrip("/")
        self.token_source = token_source
        self.timeout = timeout
        self.request_method = request_method

    @staticmethod
    def store_url(
        api_root: str, project: str, location: str, dataset_id: str, fhir_store_id: str
    ) -> str:
        return (
            f"{api_root.rstrip('/')}/projects/{project}/locations/{location}"
            f"/datasets/{dataset_id}/fhirStores/{fhir_store_id}/fhir"
        )

    @classmethod
    def for_dataset(
        cls,
        api_root: str,
        project: str,
        location: str,
        dataset_id: str,
        fhir_store_id: str,
        token_source: TokenSource,
        **kwargs: Any,
    ) -> "FhirStoreClient":
        url = cls.store_url(api_root, project, location, dataset_id, fhir_store_id)
        return cls(url, token_source, **kwargs)

    def _build_headers(self, content_type: str = FHIR_CONTENT_TYPE) -> dict[str, str]:
        token = self.token_source.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": content_type,
            "Accept": FHIR_CONTENT_TYPE,
        }

    def _send(
        self,
        method: str,
        operation: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        data: bytes | None = None,
        content_type: str = FHIR_CONTENT_TYPE,
    ) -> requests.Response:
        headers = self._build_headers(content_type)
        url = f"{self.base_url}/{path}"

        logger.debug("fhir_request", method=method, operation=operation, path=path)
        try:
            return self.request_method(
                method,
                url,
                headers=headers,
                params=params,
                data=data,
                timeout=self.timeout,
            )
        except requests.Timeout as err:
            raise RequestTimeoutError(
                f"{operation}: no response from the FHIR store within "
                f"{self.timeout}s"
            ) from err
        except requests.RequestException as err:
            raise RemoteError(
                status_code=0, operation=operation, text=str(err)
            ) from err

    @staticmethod
    def _raise_for_status(response: requests.Response, operation: str) -> None:
        """
        Raise a :class:`RemoteError` carrying the raw body for a status above 299.

        Outcome text and diagnostics are attached when the body happens to decode.
        """
        if response.status_code <= 299:
            return

        try:
            text, diagnostics = _outcome_fields(response.json())
        except ValueError:
            text, diagnostics = None, None

        error_class = NotFoundError if response.status_code == 404 else RemoteError
        raise error_class(
            status_code=response.status_code,
            operation=operation,
            text=text,
            diagnostics=diagnostics,
            body=response.text,
        )

    @staticmethod
    def _require(resource_type: str, resource_id: str | None = None) -> None:
        if not isinstance(resource_type, str) or not resource_type:
            raise ValidationError("a resource type is required")
        if resource_id is not None and (
            not isinstance(resource_id, str) or not resource_id
        ):
            raise ValidationError(f"a {resource_type} id is required")

    @staticmethod
    def _stamp(resource_type: str, payload: Mapping[str, Any]) -> bytes:
        document = dict(payload)
        document["resourceType"] = resource_type
        return json.dumps(document).encode("utf-8")

    def create(self, resource_type: str, payload: Mapping[str, Any]) -> bytes:
        """
        Create a resource and return the raw body of the store's response.

        :raises RemoteError: With the outcome text and diagnostics for a status
            above 299.
        :raises ResponseParseError: If the error body cannot be decoded.
        """
        self._require(resource_type)
        document = dict(payload)
        document["language"] = DEFAULT_LANGUAGE

        response = self._send(
            "POST", "create", resource_type, data=self._stamp(resource_type, document)
        )
        if response.status_code <= 299:
            return response.content

        try:
            text, diagnostics = _outcome_fields(response.json())
        except ValueError as err:
            raise ResponseParseError(
                operation="create",
                status_code=response.status_code,
                body=response.text,
            ) from err

        raise RemoteError(
            status_code=response.status_code,
            operation="create",
            text=text,
            diagnostics=diagnostics,
            body=response.text,
        )

    def read(self, resource_type: str, resource_id: str) -> bytes:
        self._require(resource_type, resource_id)
        response = self._send("GET", "read", f"{resource_type}/{resource_id}")
        self._raise_for_status(response, "read")
        return response.content

    def delete(self, resource_type: str, resource_id: str) -> bytes:
        self._require(resource_type, resource_id)
        response = self._send("DELETE", "delete", f"{resource_type}/{resource_id}")
        self._raise_for_status(response, "delete")
        return response.content

    def update(
        self, resource_type: str, resource_id: str, payload: Mapping[str, Any]
    ) -> bytes:
        """Replace a whole resource, re-stamping its ``resourceType``."""
        self._require(resource_type, resource_id)
        response = self._send(
            "PUT",
            "update",
            f"{resource_type}/{resource_id}",
            data=self._stamp(resource_type, payload),
        )
        self._raise_for_status(response, "update")
        return response.content

    def patch(
        self, resource_type: str, resource_id: str, ops: Sequence[PatchOperation]
    ) -> bytes:
        """
        Apply an ordered list of JSON patch operations to one resource.

        See: https://www.hl7.org/fhir/http.html#patch
        """
        self._require(resource_type, resource_id)
        response = self._send(
            "PATCH",
            "patch",
            f"{resource_type}/{resource_id}",
            data=json.dumps(list(ops)).encode("utf-8"),
            content_type=PATCH_CONTENT_TYPE,
        )
        self._raise_for_status(response, "patch")
        return response.content

    def _search_bundle(
        self, resource_type: str, params: Mapping[str, str]
    ) -> JsonObject:
        self._require(resource_type)
        if params is None:
            raise ValidationError("search params are required")
        for name, value in params.items():
            if not isinstance(value, str):
                raise ValidationError(
                    f"search param {name!r} must be a string, "
                    f"got {type(value).__name__}"
                )

        response = self._send(
            "POST", "search", f"{resource_type}/_search", params=dict(params)
        )
        self._raise_for_status(response, "search")
        return decode_json(response.content, "search", response.status_code)

    def search(
        self, resource_type: str, params: Mapping[str, str]
    ) -> list[JsonObject]:
        """
        Search for resources of one type.

        :param resource_type: FHIR resource type to search.
        :param params: Search parameters. Every value must be a string.
        :returns: The matching resources, in the order the store returned them.
        :raises ValidationError: If a parameter value is not a string. No request
            is sent in that case.
        :raises ServerContractError: If the response is not a ``searchset`` Bundle.
        """
        return validate_bundle(self._search_bundle(resource_type, params))

    def search_page(
        self, resource_type: str, params: Mapping[str, str]
    ) -> Page[JsonObject]:
        """Like :meth:`search`, also returning the total and the next-page link."""
        return self._page(self._search_bundle(resource_type, params))

    def search_next(self, next_url: str) -> Page[JsonObject]:
        """
        Fetch the page behind a Bundle's ``next`` link.

        :raises ServerContractError: If the link does not point into this store.
        """
        if not isinstance(next_url, str) or not next_url.startswith(
            f"{self.base_url}/"
        ):
            raise ServerContractError(
                f"server error: next link {next_url!r} is outside the FHIR store"
            )
        response = self._send("GET", "search", next_url[len(self.base_url) + 1 :])
        self._raise_for_status(response, "search")
        document = decode_json(response.content, "search", response.status_code)
        return self._page(document)

    def search_all(
        self,
        resource_type: str,
        params: Mapping[str, str],
        limit: int | None = None,
    ) -> list[JsonObject]:
        """
        Search and follow ``next`` links until every match has been read, or
        ``limit`` matches when given.
        """
        page = self.search_page(resource_type, params)
        resources = list(page.items)
        while page.next_cursor and (limit is None or len(resources) < limit):
            page = self.search_next(page.next_cursor)
            resources.extend(page.items)
        return resources if limit is None else resources[:limit]

    @staticmethod
    def _page(document: JsonObject) -> Page[JsonObject]:
        resources = validate_bundle(document)
        next_url = _next_link(cast("Bundle", document))
        total = document.get("total")
        return Page(
            items=resources,
            next_cursor=next_url,
            has_more=next_url is not None,
            total=total if isinstance(total, int) else None,
        )

    def patient_everything(self, patient_id: str) -> bytes:
        """Return every resource in the patient's compartment, unparsed."""
        self._require("Patient", patient_id)
        response = self._send("GET", "everything", f"Patient/{patient_id}/$everything")
        self._raise_for_status(response, "everything")
        return response.content
