"""
In-memory OpenConceptLab API stub.

Implements ``GET /orgs/{org}/sources/{source}/concepts/{concept}/`` and
``GET /orgs/{org}/sources/{source}/concepts/`` over a handful of CIEL concepts.
"""

from __future__ import annotations

import json
import re
from http.client import responses as http_responses
from typing import Any
from urllib.parse import urlencode

from requests import Response
from requests.structures import CaseInsensitiveDict

_CONCEPT_PATH = re.compile(
    r"/orgs/(?P<org>[^/]+)/sources/(?P<source>[^/]+)/concepts/"
    r"(?:(?P<concept>[^/]+)/)?$"
)


def _create_response(
    status_code: int, headers: dict[str, str], json_data: Any
) -> Response:
    response = Response()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(
        {"Content-Type": "application/json", **headers}
    )
    response._content = json.dumps(json_data).encode("utf-8")  # noqa: SLF001
    response.encoding = "utf-8"
    response.reason = http_responses.get(status_code, "Unknown")
    return response


def _concept(
    concept_id: str, display_name: str, concept_class: str, synonyms: list[str]
) -> dict[str, Any]:
    names = [{"name": display_name, "locale": "en", "name_type": "FULLY_SPECIFIED"}]
    names.extend({"name": s, "locale": "en", "name_type": "SYNONYM"} for s in synonyms)
    return {
        "id": concept_id,
        "external_id": f"{concept_id}AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"[:36],
        "concept_class": concept_class,
        "datatype": "N/A",
        "url": f"/orgs/CIEL/sources/CIEL/concepts/{concept_id}/",
        "retired": False,
        "source": "CIEL",
        "owner": "CIEL",
        "owner_type": "Organization",
        "owner_url": "/orgs/CIEL/",
        "display_name": display_name,
        "display_locale": "en",
        "version": "1",
        "names": names,
    }


class OclApiStub:
    """
    Minimal OCL stub. Requests need an ``Authorization: Token <token>`` header.

    Listings honour ``q`` (matched against every name), ``conceptClass``,
    ``page`` and ``limit`` (default 10), and return the ``num_found``, ``next``
    and ``previous`` pagination headers.
    """

    BASE_URL = "https://ocl.example.org"

    def __init__(self, base_url: str = BASE_URL) -> None:
        self.base_url = base_url.rstrip("/")
        self.requests: list[dict[str, Any]] = []

        # Internal store: (org, source) -> concept id -> concept
        self._concepts: dict[tuple[str, str], dict[str, dict[str, Any]]] = {}
        self._seed_default_concepts()

    def _seed_default_concepts(self) -> None:
        for concept in (
            _concept("106", "Acute Coryza", "Diagnosis", ["Common cold"]),
            _concept("42", "Pulmonary Tuberculosis", "Diagnosis", ["TB"]),
            _concept("117543", "Herpes Labialis", "Diagnosis", ["Cold sores"]),
            _concept("140238", "Fever", "Symptom", ["Pyrexia"]),
            _concept("143264", "Cough", "Symptom", []),
            _concept("5219", "Cold intolerance", "Symptom", []),
        ):
            self.upsert_concept("CIEL", "CIEL", concept)

    def upsert_concept(self, org: str, source: str, concept: dict[str, Any]) -> None:
        self._concepts.setdefault((org, source), {})[concept["id"]] = concept

    def get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout: Any = None,
    ) -> Response:
        headers = headers or {}
        params = dict(params or {})
        self.requests.append(
            {"url": url, "headers": dict(headers), "params": params, "timeout": timeout}
        )

        if not headers.get("Authorization", "").startswith("Token "):
            return _create_response(401, {}, {"detail": "Authentication required."})

        match = _CONCEPT_PATH.match(url[len(self.base_url) :])
        if not url.startswith(self.base_url) or match is None:
            return _create_response(404, {}, {"detail": "Not found."})

        concepts = self._concepts.get((match["org"], match["source"]), {})
        if match["concept"]:
            concept = concepts.get(match["concept"])
            if concept is None:
                return _create_response(404, {}, {"detail": "Not found."})
            return _create_response(200, {}, concept)

        return self._list(url, list(concepts.values()), params)

    def _list(
        self, url: str, concepts: list[dict[str, Any]], params: dict[str, str]
    ) -> Response:
        if "q" in params:
            q = params["q"].lower()
            concepts = [
                c for c in concepts if any(q in n["name"].lower() for n in c["names"])
            ]
        if "conceptClass" in params:
            concepts = [
                c for c in concepts if c["concept_class"] == params["conceptClass"]
            ]

        page = int(params.get("page", "1"))
        limit = int(params.get("limit", "10"))
        start = (page - 1) * limit
        items = concepts[start : start + limit]

        headers = {"num_found": str(len(concepts))}
        if start + limit < len(concepts):
            headers["next"] = f"{url}?{urlencode({**params, 'page': page + 1})}"
        if page > 1:
            headers["previous"] = f"{url}?{urlencode({**params, 'page': page - 1})}"

        if params.get("verbose") != "true":
            items = [
                {k: v for k, v in c.items() if k != "names"} for c in items
            ]
        return _create_response(200, headers, items)
