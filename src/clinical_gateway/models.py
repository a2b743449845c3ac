"""
Domain models built on top of the raw FHIR resources held by the store.

The store stays the single source of truth: these are read-only views decoded
from its documents, and they are rebuilt on every request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, cast

from clinical_gateway.common.common import JsonObject, split_reference
from clinical_gateway.errors import ServerContractError, ValidationError


def _collect_references(value: Any, found: list[str]) -> None:
    # Depth-first walk that keeps document order and drops duplicates.
    if isinstance(value, dict):
        reference = value.get("reference")
        if isinstance(reference, str) and reference not in found:
            found.append(reference)
        for item in value.values():
            _collect_references(item, found)
    elif isinstance(value, list):
        for item in value:
            _collect_references(item, found)


@dataclass(frozen=True)
class ClinicalResource:
    """
    Tagged envelope around an open FHIR resource document.

    The header (type, id, outgoing references) is typed; every other field is kept
    untouched in ``extra`` so that documents round-trip without loss.

    :param resource_type: FHIR resource type, e.g. ``"Condition"``.
    :param id: Logical id assigned by the store.
    :param references: Every ``"Type/id"`` reference found in the document, in
        document order.
    :param extra: All fields of the document except ``resourceType`` and ``id``.
    """

    resource_type: str
    id: str
    references: tuple[str, ...] = ()
    extra: JsonObject = field(default_factory=dict)

    @classmethod
    def from_dict(cls, document: JsonObject) -> ClinicalResource:
        resource_type = document.get("resourceType")
        resource_id = document.get("id")
        if not isinstance(resource_type, str) or not isinstance(resource_id, str):
            raise ServerContractError(
                "server error: resource documents need a string resourceType and id"
            )
        extra = {k: v for k, v in document.items() if k not in ("resourceType", "id")}
        found: list[str] = []
        _collect_references(extra, found)
        return cls(
            resource_type=resource_type,
            id=resource_id,
            references=tuple(found),
            extra=extra,
        )

    def to_dict(self) -> JsonObject:
        return {"resourceType": self.resource_type, "id": self.id, **self.extra}

    @property
    def reference(self) -> str:
        return f"{self.resource_type}/{self.id}"

    def references_to(self, resource_type: str) -> list[str]:
        """Return the ids of every referenced resource of ``resource_type``."""
        ids = []
        for reference in self.references:
            try:
                ref_type, ref_id = split_reference(reference)
            except ValidationError:
                # Absolute URLs and contained references are not followed
                continue
            if ref_type == resource_type:
                ids.append(ref_id)
        return ids


def _header(document: JsonObject, resource_type: str) -> ClinicalResource:
    resource = ClinicalResource.from_dict(document)
    if resource.resource_type != resource_type:
        raise ServerContractError(
            f"server error: expected {resource_type}, got {resource.reference}"
        )
    return resource


class AccessLevel(StrEnum):
    """
    Access granted by an episode, stored as the episode's single ``type`` text.
    """

    LIMITED = "PROFILE_AND_RECENT_VISITS_ACCESS"
    FULL = "FULL_ACCESS"
    EMERGENCY = "EMERGENCY_ACCESS"


class EpisodeStatus(StrEnum):
    PLANNED = "planned"
    ACTIVE = "active"
    FINISHED = "finished"


class EncounterStatus(StrEnum):
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"


class EpisodeState(StrEnum):
    """States of the episode access state machine."""

    REQUESTED = "requested"
    ACTIVE_LIMITED = "active-limited"
    ACTIVE_FULL = "active-full"
    ACTIVE_EMERGENCY = "active-emergency"
    FINISHED = "finished"


_ACTIVE_STATES = {
    AccessLevel.LIMITED: EpisodeState.ACTIVE_LIMITED,
    AccessLevel.FULL: EpisodeState.ACTIVE_FULL,
    AccessLevel.EMERGENCY: EpisodeState.ACTIVE_EMERGENCY,
}


def _reference_of(document: JsonObject, key: str) -> dict[str, Any]:
    value = document.get(key)
    if not isinstance(value, dict) or not isinstance(value.get("reference"), str):
        raise ServerContractError(
            f"server error: {document.get('resourceType')}/{document.get('id')} "
            f"has no {key} reference"
        )
    return cast("dict[str, Any]", value)


@dataclass(frozen=True)
class Episode:
    """
    An episode of care: a time-bounded care relationship between a patient and a
    provider organisation.
    """

    id: str
    patient_ref: str
    organization_ref: str
    status: EpisodeStatus
    access_level: AccessLevel
    period_start: str | None
    period_end: str | None
    patient_phone: str | None
    resource: JsonObject

    @classmethod
    def from_resource(cls, document: JsonObject) -> Episode:
        """
        Decode an ``EpisodeOfCare`` resource.

        :raises ServerContractError: If the document lacks the id, status, references
            or the single access level entry that every episode carries.
        """
        episode_id = _header(document, "EpisodeOfCare").id

        try:
            status = EpisodeStatus(document.get("status"))
        except ValueError as err:
            raise ServerContractError(
                f"server error: episode {episode_id} has unknown status "
                f"{document.get('status')!r}"
            ) from err

        types = document.get("type")
        if not isinstance(types, list) or len(types) != 1:
            raise ServerContractError(
                f"server error: expected episode {episode_id} type to have exactly "
                "one entry"
            )
        try:
            access_level = AccessLevel(types[0].get("text"))
        except (AttributeError, ValueError) as err:
            raise ServerContractError(
                f"server error: unknown episode access level for {episode_id}"
            ) from err

        patient = _reference_of(document, "patient")
        organization = _reference_of(document, "managingOrganization")
        period = document.get("period") or {}

        return cls(
            id=episode_id,
            patient_ref=patient["reference"],
            organization_ref=organization["reference"],
            status=status,
            access_level=access_level,
            period_start=period.get("start"),
            period_end=period.get("end"),
            patient_phone=patient.get("display"),
            resource=document,
        )

    @property
    def reference(self) -> str:
        return f"EpisodeOfCare/{self.id}"

    @property
    def is_active(self) -> bool:
        return self.status is EpisodeStatus.ACTIVE

    @property
    def state(self) -> EpisodeState:
        if self.status is EpisodeStatus.FINISHED:
            return EpisodeState.FINISHED
        if self.status is EpisodeStatus.PLANNED:
            return EpisodeState.REQUESTED
        return _ACTIVE_STATES[self.access_level]

    def to_dict(self) -> JsonObject:
        return {
            "id": self.id,
            "patientRef": self.patient_ref,
            "organizationRef": self.organization_ref,
            "status": self.status.value,
            "accessLevel": self.access_level.name.lower(),
            "state": self.state.value,
            "period": {"start": self.period_start, "end": self.period_end},
        }


@dataclass(frozen=True)
class Encounter:
    """A single clinical visit nested inside an active episode."""

    id: str
    episode_ref: str | None
    patient_ref: str | None
    status: str
    period_start: str | None
    period_end: str | None
    resource: JsonObject

    @classmethod
    def from_resource(cls, document: JsonObject) -> Encounter:
        header = _header(document, "Encounter")
        episode_ids = header.references_to("EpisodeOfCare")
        episode_ref = f"EpisodeOfCare/{episode_ids[0]}" if episode_ids else None

        subject = document.get("subject") or {}
        period = document.get("period") or {}
        return cls(
            id=header.id,
            episode_ref=episode_ref,
            patient_ref=subject.get("reference"),
            status=str(document.get("status", "")),
            period_start=period.get("start"),
            period_end=period.get("end"),
            resource=document,
        )

    @property
    def is_finished(self) -> bool:
        return self.status == EncounterStatus.FINISHED


@dataclass(frozen=True)
class EpisodePayload:
    """An episode together with the number of encounters recorded against it."""

    episode: Episode
    total_visits: int

    def to_dict(self) -> JsonObject:
        return {"episode": self.episode.to_dict(), "totalVisits": self.total_visits}


@dataclass(frozen=True)
class Page[T]:
    """
    One page of a paginated listing.

    :param items: Items on this page.
    :param next_cursor: Opaque cursor for the next page, if there is one.
    :param has_more: Whether another page exists.
    :param total: Total number of matches reported by the server, if known.
    :param previous_cursor: Opaque cursor for the previous page, if there is one.
    """

    items: list[T]
    next_cursor: str | None = None
    has_more: bool = False
    total: int | None = None
    previous_cursor: str | None = None
