"""
Unit tests for :mod:`clinical_gateway.terminology`.
"""

from typing import Any

import pytest
import requests
from requests import Response
from requests.structures import CaseInsensitiveDict
from stubs.stub_ocl import OclApiStub

from clinical_gateway.errors import (
    ConfigurationError,
    RemoteError,
    RequestTimeoutError,
    ServerContractError,
    ValidationError,
)
from clinical_gateway.terminology import OclClient


@pytest.fixture
def ocl_stub() -> OclApiStub:
    return OclApiStub()


@pytest.fixture
def ocl(ocl_stub: OclApiStub) -> OclClient:
    return OclClient(OclApiStub.BASE_URL, "ocl-token", get_method=ocl_stub.get)


def _client_returning(body: bytes, headers: dict[str, str]) -> OclClient:
    def _get(url: str, **kwargs: Any) -> Response:
        response = Response()
        response.status_code = 200
        response.headers = CaseInsensitiveDict(headers)
        response._content = body  # noqa: SLF001
        response.encoding = "utf-8"
        return response

    return OclClient(OclApiStub.BASE_URL, "t", get_method=_get)


@pytest.mark.parametrize(("url", "token"), [("", "t"), ("https://ocl", "")])
def test_client_requires_url_and_token(url: str, token: str) -> None:
    with pytest.raises(ConfigurationError):
        OclClient(url, token)


class TestGetConcept:
    def test_returns_the_concept(self, ocl: OclClient) -> None:
        concept = ocl.get_concept("CIEL", "CIEL", "106")

        assert concept["id"] == "106"
        assert concept["display_name"] == "Acute Coryza"

    def test_sends_token_auth_and_mapping_flags(
        self, ocl: OclClient, ocl_stub: OclApiStub
    ) -> None:
        ocl.get_concept("CIEL", "CIEL", "106", include_mappings=True)

        sent = ocl_stub.requests[-1]
        assert sent["url"] == (
            "https://ocl.example.org/orgs/CIEL/sources/CIEL/concepts/106/"
        )
        assert sent["headers"]["Authorization"] == "Token ocl-token"
        assert sent["params"] == {
            "includeMappings": "true",
            "includeInverseMappings": "false",
        }
        assert sent["timeout"] == 30

    def test_unknown_concept_is_a_remote_error(self, ocl: OclClient) -> None:
        with pytest.raises(RemoteError) as excinfo:
            ocl.get_concept("CIEL", "CIEL", "999999")

        assert excinfo.value.status_code == 404

    def test_concept_without_id_breaks_the_contract(self) -> None:
        client = _client_returning(b'{"display_name": "x"}', {})

        with pytest.raises(ServerContractError):
            client.get_concept("CIEL", "CIEL", "106")

    def test_missing_concept_id_is_rejected(self, ocl: OclClient) -> None:
        with pytest.raises(ValidationError):
            ocl.get_concept("CIEL", "CIEL", "")


class TestListConcepts:
    def test_search_by_name_and_class(self, ocl: OclClient) -> None:
        page = ocl.list_concepts("CIEL", "CIEL", q="cold", concept_class="Diagnosis")

        assert sorted(c["id"] for c in page.items) == ["106", "117543"]
        for concept in page.items:
            assert concept["concept_class"] == "Diagnosis"
            assert concept["display_name"]
            assert concept["source"] == "CIEL"
            assert "names" not in concept
        assert page.total == 2
        assert page.has_more is False

    def test_verbose_listing_includes_names(self, ocl: OclClient) -> None:
        page = ocl.list_concepts("CIEL", "CIEL", q="cough", verbose=True)

        assert page.items[0]["names"][0]["name"] == "Cough"

    def test_pagination_cursors(self, ocl: OclClient) -> None:
        first = ocl.list_concepts("CIEL", "CIEL", limit=4)
        second = ocl.list_concepts("CIEL", "CIEL", limit=4, page=first.next_cursor)

        assert len(first.items) == 4
        assert first.total == 6
        assert first.next_cursor == "2"
        assert first.previous_cursor is None
        assert len(second.items) == 2
        assert second.has_more is False
        assert second.previous_cursor == "1"

    def test_optional_params_are_only_sent_when_given(
        self, ocl: OclClient, ocl_stub: OclApiStub
    ) -> None:
        ocl.list_concepts(
            "CIEL",
            "CIEL",
            sort_desc="lastUpdate",
            include_retired=False,
            include_inverse_mappings=True,
        )

        assert ocl_stub.requests[-1]["params"] == {
            "verbose": "false",
            "sortDesc": "lastUpdate",
            "includeRetired": "0",
            "includeReverseMappings": "true",
        }

    def test_listing_that_is_not_a_list_breaks_the_contract(self) -> None:
        client = _client_returning(b'{"results": []}', {"num_found": "0"})

        with pytest.raises(ServerContractError):
            client.list_concepts("CIEL", "CIEL")

    def test_non_numeric_num_found_breaks_the_contract(self) -> None:
        client = _client_returning(b"[]", {"num_found": "many"})

        with pytest.raises(ServerContractError):
            client.list_concepts("CIEL", "CIEL")

    def test_missing_num_found_leaves_total_unknown(self) -> None:
        client = _client_returning(b"[]", {})

        assert client.list_concepts("CIEL", "CIEL").total is None


def test_bad_token_is_a_remote_error(ocl_stub: OclApiStub) -> None:
    def _get_without_auth(url: str, **kwargs: Any) -> Response:
        kwargs["headers"] = {}
        return ocl_stub.get(url, **kwargs)

    client = OclClient(OclApiStub.BASE_URL, "t", get_method=_get_without_auth)

    with pytest.raises(RemoteError) as excinfo:
        client.get_concept("CIEL", "CIEL", "106")

    assert excinfo.value.status_code == 401


def test_timeout_becomes_request_timeout_error() -> None:
    def _get(url: str, **kwargs: Any) -> Response:
        raise requests.Timeout("slow")

    with pytest.raises(RequestTimeoutError):
        OclClient(OclApiStub.BASE_URL, "t", get_method=_get).get_concept(
            "CIEL", "CIEL", "106"
        )
