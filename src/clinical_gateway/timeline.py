"""
Module: clinical_gateway.timeline

Derived clinical views assembled from several FHIR resource types.

Views are rebuilt from the store on every call. The per-type searches behind a
view are independent, so they run concurrently on a thread pool. The view is
always assembled in a fixed type order, whatever order the searches finish in.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import StrEnum
from time import monotonic
from typing import Any

import structlog

from clinical_gateway.common.common import (
    JsonObject,
    make_reference,
    require_identifiers,
)
from clinical_gateway.errors import (
    AuthError,
    ClinicalGatewayError,
    RequestTimeoutError,
    ServerContractError,
    StateError,
    ValidationError,
)
from clinical_gateway.models import ClinicalResource, Episode
from clinical_gateway.resource_gateway import FhirStoreClient, decode_json

logger = structlog.get_logger(__name__)

VISIT_SUMMARY_TYPES = (
    "Condition",
    "Observation",
    "Composition",
    "ServiceRequest",
    "MedicationRequest",
    "AllergyIntolerance",
)

DEFAULT_PAGE_SIZE = 50
DEFAULT_REQUEST_TIMEOUT = 120


class AggregationFailurePolicy(StrEnum):
    """What a view does when the search for one of its types fails."""

    FAIL = "fail"
    DEGRADE = "degrade"


class AggregatedView(dict[str, list[JsonObject]]):
    """
    Mapping of resource type to matching resources.

    ``failures`` maps a resource type to the error that kept it empty. It is only
    filled under :attr:`AggregationFailurePolicy.DEGRADE`.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failures: dict[str, str] = {}


type _Job = tuple[str, dict[str, str]]


class TimelineAggregator:
    def __init__(
        self,
        gateway: FhirStoreClient,
        *,
        failure_policy: AggregationFailurePolicy = AggregationFailurePolicy.FAIL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_workers: int = len(VISIT_SUMMARY_TYPES),
    ) -> None:
        """
        :param gateway: Client for the FHIR store.
        :param failure_policy: Whether a failed per-type search fails the whole
            view or leaves that type empty.
        :param request_timeout: Deadline in seconds for building one view.
        :param page_size: ``_count`` sent with each per-type search of a timeline.
        :param max_workers: Size of the thread pool used for each view.
        """
        self.gateway = gateway
        self.failure_policy = AggregationFailurePolicy(failure_policy)
        self.request_timeout = request_timeout
        self.page_size = page_size
        self.max_workers = max_workers

    # --------------- views -----------------

    def visit_summary(
        self, encounter_id: str, max_page_size: int | None = None
    ) -> AggregatedView:
        """
        Everything recorded during one encounter, keyed by resource type.

        Every type in ``VISIT_SUMMARY_TYPES`` is present, with ``[]`` when nothing
        matched.
        """
        require_identifiers(encounter_id=encounter_id)
        page_size = self._page_size(max_page_size)
        deadline = monotonic() + self.request_timeout

        jobs = self._encounter_jobs(encounter_id, page_size)
        return self._run({0: jobs}, deadline)[0]

    def patient_timeline(self, episode_id: str) -> list[AggregatedView]:
        """One view per encounter of an active episode, newest encounter first."""
        return self._timeline(episode_id, None)

    def patient_timeline_with_count(
        self, episode_id: str, count: int
    ) -> list[AggregatedView]:
        """Like :meth:`patient_timeline`, limited to the ``count`` latest encounters."""
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError("count must be a positive integer")
        return self._timeline(episode_id, count)

    def allergy_summary(self, patient_id: str) -> list[str]:
        """Display text of the patient's active confirmed high-criticality allergies."""
        require_identifiers(patient_id=patient_id)
        return self._code_texts(
            "AllergyIntolerance",
            {
                "clinical-status": "active",
                "verification-status": "confirmed",
                "type": "allergy",
                "criticality": "high",
                "patient": make_reference("Patient", patient_id),
            },
        )

    def problem_summary(self, patient_id: str) -> list[str]:
        """Display text of the patient's active, confirmed problem list conditions."""
        require_identifiers(patient_id=patient_id)
        return self._code_texts(
            "Condition",
            {
                "clinical-status": "active",
                "verification-status": "confirmed",
                "category": "problem-list-item",
                "subject": make_reference("Patient", patient_id),
            },
        )

    # --------------- internal helpers -----------------

    def _page_size(self, max_page_size: int | None) -> int:
        if max_page_size is None:
            return self.page_size
        if (
            isinstance(max_page_size, bool)
            or not isinstance(max_page_size, int)
            or max_page_size < 1
        ):
            raise ValidationError("max_page_size must be a positive integer")
        return max_page_size

    @staticmethod
    def _encounter_jobs(encounter_id: str, page_size: int) -> dict[str, _Job]:
        encounter_reference = make_reference("Encounter", encounter_id)
        return {
            resource_type: (
                resource_type,
                {"encounter": encounter_reference, "_count": str(page_size)},
            )
            for resource_type in VISIT_SUMMARY_TYPES
        }

    def _timeline(self, episode_id: str, count: int | None) -> list[AggregatedView]:
        require_identifiers(episode_id=episode_id)
        deadline = monotonic() + self.request_timeout

        body = self.gateway.read("EpisodeOfCare", episode_id)
        episode = Episode.from_resource(decode_json(body, "read"))
        if not episode.is_active:
            raise StateError(
                f"episode {episode_id} is {episode.status.value}; "
                "a timeline needs an active episode"
            )

        params = {
            "episode-of-care": episode.reference,
            "_sort": "-_lastUpdated",
        }
        if count is not None:
            params["_count"] = str(count)
        encounters = self.gateway.search_all("Encounter", params, limit=count)

        jobs = {
            index: self._encounter_jobs(str(encounter["id"]), self.page_size)
            for index, encounter in enumerate(encounters)
        }
        views = self._run(jobs, deadline)

        timeline = []
        for index, encounter in enumerate(encounters):
            view = views[index]
            view["Encounter"] = [encounter]
            timeline.append(view)

        logger.debug(
            "timeline_built", episode_id=episode_id, encounters=len(timeline)
        )
        return timeline

    def _run(
        self, jobs: dict[int, dict[str, _Job]], deadline: float
    ) -> dict[int, AggregatedView]:
        """
        Run every search of every view on one pool, waiting until ``deadline``.

        :raises RequestTimeoutError: If the searches are not all done by then.
        """
        if not jobs:
            return {}

        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="aggregator"
        )
        try:
            futures: dict[int, dict[str, Future[list[JsonObject]]]] = {
                index: {
                    key: executor.submit(self.gateway.search, resource_type, params)
                    for key, (resource_type, params) in view_jobs.items()
                }
                for index, view_jobs in jobs.items()
            }
            pending = [f for view in futures.values() for f in view.values()]
            _, not_done = wait(pending, timeout=max(deadline - monotonic(), 0))
            if not_done:
                raise RequestTimeoutError(
                    f"aggregated view not ready within {self.request_timeout}s"
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return {
            index: self._assemble(view_futures)
            for index, view_futures in futures.items()
        }

    def _assemble(
        self, futures: dict[str, Future[list[JsonObject]]]
    ) -> AggregatedView:
        view = AggregatedView()
        for key, future in futures.items():
            try:
                view[key] = future.result()
            except AuthError:
                raise
            except ClinicalGatewayError as err:
                if self.failure_policy is AggregationFailurePolicy.FAIL:
                    raise
                view[key] = []
                view.failures[key] = str(err)
                logger.warning(
                    "aggregation_degraded", resource_type=key, error=str(err)
                )
        return view

    def _code_texts(self, resource_type: str, params: dict[str, str]) -> list[str]:
        texts = []
        for document in self.gateway.search_all(resource_type, params):
            resource = ClinicalResource.from_dict(document)
            code = resource.extra.get("code")
            text = code.get("text") if isinstance(code, dict) else None
            if not isinstance(text, str) or not text:
                raise ServerContractError(
                    f"server error: {resource.reference} has no code text"
                )
            texts.append(text)
        return texts
