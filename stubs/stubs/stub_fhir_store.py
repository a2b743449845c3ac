"""
In-memory FHIR store stub.

The stub does **not** implement the full FHIR REST API, nor FHIR validation. It
models the parts of a Cloud Healthcare style store that the clinical gateway
relies on: resource CRUD, JSON patch, ``POST /{Type}/_search`` returning a
``searchset`` Bundle and ``GET /Patient/{id}/$everything``.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from http.client import responses as http_responses
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit

from requests import Response
from requests.structures import CaseInsensitiveDict

FHIR_JSON = "application/fhir+json; charset=utf-8"

# Search parameter name -> dotted paths into the resource; lists are walked
SEARCH_PATHS: dict[str, tuple[str, ...]] = {
    "_id": ("id",),
    "patient": ("patient.reference", "subject.reference"),
    "subject": ("subject.reference",),
    "encounter": ("encounter.reference",),
    "episode-of-care": ("episodeOfCare.reference",),
    "organization": ("managingOrganization.reference",),
    "status": ("status",),
    "clinical-status": ("clinicalStatus.coding.code", "clinicalStatus.text"),
    "verification-status": (
        "verificationStatus.coding.code",
        "verificationStatus.text",
    ),
    "category": ("category.coding.code", "category"),
    "type": ("type", "type.text", "type.coding.code"),
    "criticality": ("criticality",),
    "code": ("code.coding.code", "code.text"),
}


def _create_response(
    status_code: int,
    headers: dict[str, str],
    json_data: Any,
) -> Response:
    """
    Create a :class:`requests.Response` object for the stub.

    :param status_code: HTTP status code.
    :param headers: Response headers dictionary.
    :param json_data: JSON body data.
    :return: A :class:`requests.Response` instance.
    """
    response = Response()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers)
    response._content = json.dumps(json_data).encode("utf-8")  # noqa: SLF001
    response.encoding = "utf-8"
    # Set a reason phrase for HTTP error handling
    response.reason = http_responses.get(status_code, "Unknown")
    return response


def _operation_outcome(
    status_code: int, text: str, diagnostics: str | None = None
) -> Response:
    issue: dict[str, Any] = {
        "severity": "error",
        "code": "processing",
        "details": {"text": text},
    }
    if diagnostics:
        issue["diagnostics"] = diagnostics
    return _create_response(
        status_code,
        {"Content-Type": FHIR_JSON},
        {"resourceType": "OperationOutcome", "issue": [issue]},
    )


def _values_at(value: Any, path: list[str]) -> list[str]:
    if isinstance(value, list):
        found: list[str] = []
        for item in value:
            found.extend(_values_at(item, path))
        return found
    if not path:
        return [value] if isinstance(value, str) else []
    if not isinstance(value, dict):
        return []
    return _values_at(value.get(path[0]), path[1:])


def _references_in(value: Any) -> set[str]:
    found: set[str] = set()
    if isinstance(value, dict):
        reference = value.get("reference")
        if isinstance(reference, str):
            found.add(reference)
        for item in value.values():
            found |= _references_in(item)
    elif isinstance(value, list):
        for item in value:
            found |= _references_in(item)
    return found


def _apply_patch(document: dict[str, Any], ops: list[dict[str, Any]]) -> None:
    """Apply JSON patch ``add``, ``replace`` and ``remove`` operations in place."""
    for op in ops:
        parts = op["path"].split("/")[1:]
        target: Any = document
        for part in parts[:-1]:
            target = target[int(part)] if isinstance(target, list) else target[part]
        last = parts[-1]

        if isinstance(target, list):
            if op["op"] == "add" and last == "-":
                target.append(op["value"])
            elif op["op"] == "add":
                target.insert(int(last), op["value"])
            elif op["op"] == "replace":
                target[int(last)] = op["value"]
            else:
                del target[int(last)]
        elif op["op"] in ("add", "replace"):
            if op["op"] == "replace" and last not in target:
                raise KeyError(op["path"])
            target[last] = op["value"]
        else:
            del target[last]


class FhirStoreStub:
    """
    Minimal in-memory stub of a FHIR store, used as the ``request_method`` of a
    :class:`clinical_gateway.resource_gateway.FhirStoreClient`.

    * ``POST /{Type}`` creates a resource with a fresh id
    * ``GET``, ``PUT``, ``PATCH`` and ``DELETE`` on ``/{Type}/{id}``
    * ``POST /{Type}/_search`` matches the query parameters listed in
      ``SEARCH_PATHS`` (comma separated values are alternatives) and honours
      ``_count`` and ``_sort=-_lastUpdated``. Results are paged by ``_count``,
      or by ``default_page_size`` when set, and the ``next`` link is a
      ``GET /{Type}?...&_page_token=<offset>`` URL
    * ``GET /Patient/{id}/$everything``
    * Errors are ``OperationOutcome`` bodies with ``details.text`` and
      ``diagnostics``

    Every request is recorded in :attr:`requests`.
    """

    BASE_URL = "https://fhir.example.org/v1/fhir"

    def __init__(
        self, base_url: str = BASE_URL, default_page_size: int | None = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_page_size = default_page_size

        # Internal store: resource type -> id -> resource
        self._resources: dict[str, dict[str, dict[str, Any]]] = {}
        self._version = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

        # (method, resource type) -> forced error response
        self._failures: dict[tuple[str, str], tuple[int, str, str | None]] = {}

        self.requests: list[dict[str, Any]] = []

    # --------------- test set-up helpers -----------------

    def seed(self, resource: dict[str, Any]) -> dict[str, Any]:
        """
        Store ``resource`` as-is, assigning an id when it has none.

        :return: The stored resource.
        """
        stored = json.loads(json.dumps(resource))
        stored.setdefault("id", str(uuid.uuid4()))
        self._touch(stored)
        self._resources.setdefault(stored["resourceType"], {})[stored["id"]] = stored
        return stored

    def resources(self, resource_type: str) -> list[dict[str, Any]]:
        return list(self._resources.get(resource_type, {}).values())

    def get(self, resource_type: str, resource_id: str) -> dict[str, Any] | None:
        return self._resources.get(resource_type, {}).get(resource_id)

    def fail(
        self,
        method: str,
        resource_type: str,
        status_code: int = 500,
        text: str = "internal error",
        diagnostics: str | None = None,
    ) -> None:
        """Make every ``method`` request against ``resource_type`` fail."""
        self._failures[(method.upper(), resource_type)] = (
            status_code,
            text,
            diagnostics,
        )

    def requests_for(self, method: str, resource_type: str) -> list[dict[str, Any]]:
        return [
            r
            for r in self.requests
            if r["method"] == method.upper()
            and r["path"].split("/")[0] == resource_type
        ]

    # --------------- requests.request compatible entry point -----------------

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        data: bytes | None = None,
        timeout: Any = None,
    ) -> Response:
        method = method.upper()
        split = urlsplit(url)
        query = dict(parse_qsl(split.query))
        query.update(params or {})
        path = url.split("?")[0][len(self.base_url) :].strip("/")
        self.requests.append(
            {
                "method": method,
                "url": url,
                "path": path,
                "headers": dict(headers or {}),
                "params": query,
                "data": data,
                "timeout": timeout,
            }
        )

        if not url.startswith(self.base_url):
            return _operation_outcome(404, "unknown store")

        parts = path.split("/")
        failure = self._failures.get((method, parts[0]))
        if failure:
            return _operation_outcome(*failure)

        body = json.loads(data) if data else None

        if len(parts) == 1 and method == "POST":
            return self._create(parts[0], body)
        if len(parts) == 2 and parts[1] == "_search" and method == "POST":
            return self._search(parts[0], query)
        if len(parts) == 1 and method == "GET":
            return self._search(parts[0], query)
        if len(parts) == 3 and parts[0] == "Patient" and parts[2] == "$everything":
            return self._everything(parts[1])
        if len(parts) == 2:
            resource_type, resource_id = parts
            if method == "GET":
                return self._read(resource_type, resource_id)
            if method == "PUT":
                return self._update(resource_type, resource_id, body)
            if method == "PATCH":
                return self._patch(resource_type, resource_id, body)
            if method == "DELETE":
                return self._delete(resource_type, resource_id)

        return _operation_outcome(400, f"unsupported request {method} {path}")

    # --------------- internal helpers -----------------

    def _touch(self, resource: dict[str, Any]) -> None:
        self._version += 1
        updated = self._clock + timedelta(seconds=self._version)
        resource["meta"] = {
            **resource.get("meta", {}),
            "versionId": str(self._version),
            "lastUpdated": updated.isoformat(),
        }

    def _ok(self, resource: dict[str, Any], status_code: int = 200) -> Response:
        return _create_response(status_code, {"Content-Type": FHIR_JSON}, resource)

    def _not_found(self, resource_type: str, resource_id: str) -> Response:
        return _operation_outcome(
            404,
            f"resource not found: {resource_type}/{resource_id}",
            diagnostics="resource not found",
        )

    def _create(self, resource_type: str, body: Any) -> Response:
        if not isinstance(body, dict) or body.get("resourceType") != resource_type:
            return _operation_outcome(
                400, "invalid resource", diagnostics="resourceType mismatch"
            )
        body["id"] = str(uuid.uuid4())
        self._touch(body)
        self._resources.setdefault(resource_type, {})[body["id"]] = body
        return self._ok(body, 201)

    def _read(self, resource_type: str, resource_id: str) -> Response:
        resource = self.get(resource_type, resource_id)
        if resource is None:
            return self._not_found(resource_type, resource_id)
        return self._ok(resource)

    def _update(self, resource_type: str, resource_id: str, body: Any) -> Response:
        if self.get(resource_type, resource_id) is None:
            return self._not_found(resource_type, resource_id)
        if not isinstance(body, dict) or body.get("resourceType") != resource_type:
            return _operation_outcome(400, "invalid resource")
        body["id"] = resource_id
        self._touch(body)
        self._resources[resource_type][resource_id] = body
        return self._ok(body)

    def _patch(self, resource_type: str, resource_id: str, ops: Any) -> Response:
        resource = self.get(resource_type, resource_id)
        if resource is None:
            return self._not_found(resource_type, resource_id)

        patched = json.loads(json.dumps(resource))
        try:
            _apply_patch(patched, ops)
        except (KeyError, IndexError, ValueError, TypeError) as err:
            return _operation_outcome(400, "invalid patch", diagnostics=str(err))
        self._touch(patched)
        self._resources[resource_type][resource_id] = patched
        return self._ok(patched)

    def _delete(self, resource_type: str, resource_id: str) -> Response:
        if self._resources.get(resource_type, {}).pop(resource_id, None) is None:
            return self._not_found(resource_type, resource_id)
        return self._ok({})

    @staticmethod
    def _matches(resource: dict[str, Any], name: str, value: str) -> bool:
        wanted = set(value.split(","))
        if name == "identifier":
            values = set()
            for identifier in resource.get("identifier", []):
                values.add(identifier.get("value"))
                values.add(f"{identifier.get('system')}|{identifier.get('value')}")
            return bool(wanted & values)

        paths = SEARCH_PATHS.get(name, (name,))
        for path in paths:
            if wanted & set(_values_at(resource, path.split("."))):
                return True
        return False

    def _bundle(
        self,
        resources: list[dict[str, Any]],
        total: int,
        url: str,
        next_url: str | None,
    ) -> dict[str, Any]:
        bundle: dict[str, Any] = {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": total,
            "link": [{"relation": "search", "url": url}],
        }
        if next_url:
            bundle["link"].append({"relation": "next", "url": next_url})
        # An empty result omits the entry key altogether
        if resources:
            bundle["entry"] = [
                {
                    "fullUrl": f"{self.base_url}/{r['resourceType']}/{r['id']}",
                    "resource": r,
                    "search": {"mode": "match"},
                }
                for r in resources
            ]
        return bundle

    def _search(self, resource_type: str, params: dict[str, str]) -> Response:
        filters = {
            k: v for k, v in params.items() if not k.startswith("_") or k == "_id"
        }
        matches = [
            r
            for r in self.resources(resource_type)
            if all(self._matches(r, k, v) for k, v in filters.items())
        ]

        sort = params.get("_sort")
        if sort in ("_lastUpdated", "-_lastUpdated"):
            matches.sort(
                key=lambda r: r["meta"]["lastUpdated"],
                reverse=sort.startswith("-"),
            )

        url = f"{self.base_url}/{resource_type}/_search"
        total = len(matches)
        next_url = None
        page_size = (
            int(params["_count"]) if "_count" in params else self.default_page_size
        )
        if page_size is not None:
            offset = int(params.get("_page_token", "0"))
            if offset + page_size < total:
                next_params = {**params, "_page_token": str(offset + page_size)}
                next_url = (
                    f"{self.base_url}/{resource_type}?{urlencode(next_params)}"
                )
            matches = matches[offset : offset + page_size]

        return self._ok(self._bundle(matches, total, url, next_url))

    def _everything(self, patient_id: str) -> Response:
        patient = self.get("Patient", patient_id)
        if patient is None:
            return self._not_found("Patient", patient_id)

        reference = f"Patient/{patient_id}"
        compartment = [patient]
        for resource_type, resources in self._resources.items():
            if resource_type == "Patient":
                continue
            compartment.extend(
                r for r in resources.values() if reference in _references_in(r)
            )

        url = f"{self.base_url}/Patient/{patient_id}/$everything"
        return self._ok(self._bundle(compartment, len(compartment), url, None))
