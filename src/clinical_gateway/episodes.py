"""
Module: clinical_gateway.episodes

Episode-of-care access control.

An episode moves from requested to one of three active access levels and is
finally closed:

    REQUESTED -> {ACTIVE_LIMITED, ACTIVE_FULL, ACTIVE_EMERGENCY} -> FINISHED

Episodes and encounters are only ever read from and written to the FHIR store
through :class:`~clinical_gateway.resource_gateway.FhirStoreClient`. Nothing is
held in memory between calls.
"""

import structlog
from fhir import EpisodeOfCare, Organization, PatchOperation
from fhir import Encounter as EncounterResource

from clinical_gateway.audit import AuditSink, BreakGlassAuditEvent
from clinical_gateway.common.common import (
    JsonObject,
    fhir_now,
    make_reference,
    normalize_msisdn,
    require_identifiers,
)
from clinical_gateway.errors import AuthError, ConfigurationError, StateError
from clinical_gateway.models import (
    AccessLevel,
    Encounter,
    EncounterStatus,
    Episode,
    EpisodePayload,
    EpisodeStatus,
)
from clinical_gateway.notifications import (
    BREAK_GLASS_INVOKED,
    EPISODE_ENDED,
    EPISODE_STARTED,
    EPISODE_UPGRADED,
    Publisher,
    publish_quietly,
)
from clinical_gateway.otp import OtpVerifier
from clinical_gateway.resource_gateway import FhirStoreClient, decode_json

logger = structlog.get_logger(__name__)

BREAK_GLASS_EXTENSION_URL = (
    "https://fhir.example.org/StructureDefinition/break-glass-audit-event"
)
ENCOUNTER_CLASS_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ActCode"


class EpisodeController:
    """
    Opens, escalates and closes episodes of care and their encounters.

    Every collaborator is required at construction.
    """

    def __init__(
        self,
        gateway: FhirStoreClient,
        otp_verifier: OtpVerifier,
        audit_sink: AuditSink,
        publisher: Publisher,
    ) -> None:
        collaborators = {
            "gateway": gateway,
            "otp_verifier": otp_verifier,
            "audit_sink": audit_sink,
            "publisher": publisher,
        }
        for name, collaborator in collaborators.items():
            if collaborator is None:
                raise ConfigurationError(f"episode controller requires a {name}")

        self.gateway = gateway
        self.otp_verifier = otp_verifier
        self.audit_sink = audit_sink
        self.publisher = publisher

    # --------------- episode lifecycle -----------------

    def start_by_otp(
        self,
        patient_id: str,
        provider_code: str,
        msisdn: str,
        otp: str,
        full_access: bool = False,
    ) -> EpisodePayload:
        """
        Start an episode after the patient confirms a one-time PIN.

        An active episode already held by the same patient and provider is
        returned instead of opening a second one.

        :raises ValidationError: If an identifier is missing or the phone number is
            malformed.
        :raises AuthError: If the OTP does not verify. Nothing is written.
        """
        require_identifiers(
            patient_id=patient_id, provider_code=provider_code, msisdn=msisdn, otp=otp
        )
        normalized = normalize_msisdn(msisdn)
        self._verify_otp(normalized, otp)

        organization_id = self.get_or_create_organization(provider_code)
        existing = self._active_episode(patient_id, organization_id)
        if existing is not None:
            logger.info("episode_reused", episode_id=existing.id, patient_id=patient_id)
            return EpisodePayload(existing, self._count_encounters(existing.id))

        access_level = AccessLevel.FULL if full_access else AccessLevel.LIMITED
        document = self._compose_episode(
            patient_id, organization_id, provider_code, normalized, access_level
        )
        episode = self._create_episode(document)
        publish_quietly(
            self.publisher,
            EPISODE_STARTED,
            {
                "episode_id": episode.id,
                "patient_id": patient_id,
                "provider_code": provider_code,
                "access_level": access_level.value,
            },
        )
        return EpisodePayload(episode, 0)

    def start_by_break_glass(
        self,
        practitioner_uid: str,
        patient_id: str,
        provider_code: str,
        otp: str,
        provider_phone: str,
        patient_phone: str,
        full_access: bool = False,
    ) -> EpisodePayload:
        """
        Start an emergency episode on a practitioner's say-so.

        The OTP is checked against the provider's phone, since the patient cannot
        authenticate. An ``AuditEvent`` naming the practitioner is written before the
        episode, and the episode carries an extension pointing at it.

        :raises ValidationError: If an identifier is missing or a phone number is
            malformed.
        :raises AuthError: If the OTP does not verify. Nothing is written.
        """
        require_identifiers(
            practitioner_uid=practitioner_uid,
            patient_id=patient_id,
            provider_code=provider_code,
            otp=otp,
            provider_phone=provider_phone,
            patient_phone=patient_phone,
        )
        normalized_provider = normalize_msisdn(provider_phone)
        normalized_patient = normalize_msisdn(patient_phone)
        self._verify_otp(normalized_provider, otp)

        audit_reference = self.audit_sink.record(
            BreakGlassAuditEvent(
                practitioner_uid=practitioner_uid,
                patient_id=patient_id,
                provider_code=provider_code,
                provider_phone=normalized_provider,
                patient_phone=normalized_patient,
                full_access=full_access,
            )
        )

        organization_id = self.get_or_create_organization(provider_code)
        document = self._compose_episode(
            patient_id,
            organization_id,
            provider_code,
            normalized_patient,
            AccessLevel.EMERGENCY,
        )
        document["extension"] = [
            {
                "url": BREAK_GLASS_EXTENSION_URL,
                "valueReference": {"reference": audit_reference},
            }
        ]
        episode = self._create_episode(document)

        publish_quietly(
            self.publisher,
            BREAK_GLASS_INVOKED,
            {
                "episode_id": episode.id,
                "audit_event": audit_reference,
                "practitioner_uid": practitioner_uid,
                "patient_id": patient_id,
                "provider_code": provider_code,
                "full_access": full_access,
            },
        )
        return EpisodePayload(episode, 0)

    def upgrade_episode(self, episode_id: str, otp: str, msisdn: str) -> EpisodePayload:
        """
        Escalate an active episode to full access.

        Upgrading an episode that already has full access writes nothing.

        :returns: The episode and the number of encounters recorded against it.
        :raises StateError: If the episode is not active.
        :raises AuthError: If the OTP does not verify, or ``msisdn`` is not the
            patient phone recorded on the episode.
        """
        require_identifiers(episode_id=episode_id, otp=otp, msisdn=msisdn)
        normalized = normalize_msisdn(msisdn)

        episode = self.get_episode(episode_id)
        if not episode.is_active:
            raise StateError(
                f"episode {episode_id} is {episode.status.value} and cannot be upgraded"
            )

        self._verify_otp(normalized, otp)
        recorded_phone = episode.patient_phone
        if not recorded_phone:
            raise AuthError(f"episode {episode_id} has no patient phone on record")
        if normalize_msisdn(recorded_phone) != normalized:
            raise AuthError("phone number does not match the episode's patient")

        if episode.access_level is not AccessLevel.FULL:
            document = dict(episode.resource)
            document["type"] = [{"text": AccessLevel.FULL.value}]
            episode = self._update_episode(episode_id, document)
            logger.info("episode_upgraded", episode_id=episode_id)
            publish_quietly(
                self.publisher,
                EPISODE_UPGRADED,
                {"episode_id": episode_id, "access_level": AccessLevel.FULL.value},
            )

        return EpisodePayload(episode, self._count_encounters(episode_id))

    def end_episode(self, episode_id: str) -> bool:
        """
        Close an episode, finishing any encounters still in progress.

        Ending an episode that is already finished succeeds without writing.
        """
        require_identifiers(episode_id=episode_id)
        episode = self.get_episode(episode_id)
        if episode.status is EpisodeStatus.FINISHED:
            return True

        for encounter in self.episode_encounters(
            episode_id, status=EncounterStatus.IN_PROGRESS
        ):
            self._finish_encounter(encounter)

        document = dict(episode.resource)
        document["status"] = EpisodeStatus.FINISHED.value
        document["period"] = {**document.get("period", {}), "end": fhir_now()}
        self._update_episode(episode_id, document)

        logger.info("episode_ended", episode_id=episode_id)
        publish_quietly(self.publisher, EPISODE_ENDED, {"episode_id": episode_id})
        return True

    # --------------- encounters -----------------

    def start_encounter(self, episode_id: str) -> str:
        """
        Open an ambulatory encounter inside an active episode.

        :returns: The id of the new encounter.
        :raises StateError: If the episode is not active.
        """
        require_identifiers(episode_id=episode_id)
        episode = self.get_episode(episode_id)
        if not episode.is_active:
            raise StateError(
                f"an encounter cannot be started on {episode.status.value} "
                f"episode {episode_id}"
            )

        document: EncounterResource = {
            "resourceType": "Encounter",
            "status": EncounterStatus.IN_PROGRESS.value,
            "class": {
                "system": ENCOUNTER_CLASS_SYSTEM,
                "code": "AMB",
                "display": "ambulatory",
            },
            "subject": {"reference": episode.patient_ref, "type": "Patient"},
            "episodeOfCare": [
                {"reference": episode.reference, "type": "EpisodeOfCare"}
            ],
            "serviceProvider": {"reference": episode.organization_ref},
            "period": {"start": fhir_now()},
        }
        created = decode_json(self.gateway.create("Encounter", document), "create")
        encounter = Encounter.from_resource(created)

        logger.info(
            "encounter_started", encounter_id=encounter.id, episode_id=episode_id
        )
        return encounter.id

    def end_encounter(self, encounter_id: str) -> bool:
        """Close an encounter. Ending a finished encounter succeeds without writing."""
        require_identifiers(encounter_id=encounter_id)
        body = self.gateway.read("Encounter", encounter_id)
        encounter = Encounter.from_resource(decode_json(body, "read"))
        if encounter.is_finished:
            return True

        self._finish_encounter(encounter)
        return True

    def _finish_encounter(self, encounter: Encounter) -> None:
        now = fhir_now()
        ops: list[PatchOperation] = [
            {
                "op": "replace",
                "path": "/status",
                "value": EncounterStatus.FINISHED.value,
            }
        ]
        if isinstance(encounter.resource.get("period"), dict):
            ops.append({"op": "add", "path": "/period/end", "value": now})
        else:
            ops.append({"op": "add", "path": "/period", "value": {"end": now}})

        self.gateway.patch("Encounter", encounter.id, ops)
        logger.info("encounter_ended", encounter_id=encounter.id)

    # --------------- read-side queries -----------------

    def get_episode(self, episode_id: str) -> Episode:
        require_identifiers(episode_id=episode_id)
        body = self.gateway.read("EpisodeOfCare", episode_id)
        return Episode.from_resource(decode_json(body, "read"))

    def open_episodes(self, patient_reference: str) -> list[Episode]:
        """
        Active episodes of one patient.

        :param patient_reference: ``"Patient/<id>"`` or a bare patient id.
        """
        require_identifiers(patient_reference=patient_reference)
        if "/" not in patient_reference:
            patient_reference = make_reference("Patient", patient_reference)
        return self._search_episodes(
            {"patient": patient_reference, "status": EpisodeStatus.ACTIVE.value}
        )

    def open_organization_episodes(self, provider_code: str) -> list[Episode]:
        """Active episodes managed by the organisation with ``provider_code``."""
        require_identifiers(provider_code=provider_code)
        organization_id = self.find_organization(provider_code)
        if organization_id is None:
            return []
        return self._search_episodes(
            {
                "organization": make_reference("Organization", organization_id),
                "status": EpisodeStatus.ACTIVE.value,
            }
        )

    def has_open_episode(self, patient_id: str) -> bool:
        return bool(self.open_episodes(patient_id))

    def episode_encounters(
        self, episode_id: str, status: str | None = None
    ) -> list[Encounter]:
        require_identifiers(episode_id=episode_id)
        params = {"episode-of-care": make_reference("EpisodeOfCare", episode_id)}
        if status is not None:
            params["status"] = str(status)
        return [
            Encounter.from_resource(r)
            for r in self.gateway.search_all("Encounter", params)
        ]

    # --------------- organisations -----------------

    def find_organization(self, provider_code: str) -> str | None:
        found = self.gateway.search("Organization", {"identifier": provider_code})
        if not found:
            return None
        return str(found[0]["id"])

    def get_or_create_organization(self, provider_code: str) -> str:
        """Return the id of the provider's organisation, creating it if needed."""
        organization_id = self.find_organization(provider_code)
        if organization_id is not None:
            return organization_id

        organization: Organization = {
            "resourceType": "Organization",
            "identifier": [{"use": "official", "value": provider_code}],
            "name": provider_code,
        }
        body = self.gateway.create("Organization", organization)
        created = decode_json(body, "create")
        logger.info(
            "organization_created",
            organization_id=created.get("id"),
            provider_code=provider_code,
        )
        return str(created["id"])

    # --------------- internal helpers -----------------

    def _verify_otp(self, msisdn: str, otp: str) -> None:
        if not self.otp_verifier.verify(msisdn, otp):
            logger.info("otp_rejected", msisdn=msisdn)
            raise AuthError("invalid OTP")

    def _count_encounters(self, episode_id: str) -> int:
        page = self.gateway.search_page(
            "Encounter",
            {
                "episode-of-care": make_reference("EpisodeOfCare", episode_id),
                "_count": "1",
            },
        )
        if page.total is not None:
            return page.total
        return len(self.episode_encounters(episode_id))

    def _active_episode(self, patient_id: str, organization_id: str) -> Episode | None:
        found = self.gateway.search(
            "EpisodeOfCare",
            {
                "patient": make_reference("Patient", patient_id),
                "organization": make_reference("Organization", organization_id),
                "status": EpisodeStatus.ACTIVE.value,
                "_count": "1",
            },
        )
        return Episode.from_resource(found[0]) if found else None

    def _search_episodes(self, params: dict[str, str]) -> list[Episode]:
        return [
            Episode.from_resource(r)
            for r in self.gateway.search_all("EpisodeOfCare", params)
        ]

    @staticmethod
    def _compose_episode(
        patient_id: str,
        organization_id: str,
        provider_code: str,
        patient_phone: str,
        access_level: AccessLevel,
    ) -> EpisodeOfCare:
        return {
            "resourceType": "EpisodeOfCare",
            "status": EpisodeStatus.ACTIVE.value,
            "period": {"start": fhir_now()},
            "managingOrganization": {
                "reference": make_reference("Organization", organization_id),
                "display": provider_code,
                "type": "Organization",
                "identifier": {"use": "official", "value": provider_code},
            },
            "patient": {
                "reference": make_reference("Patient", patient_id),
                "display": patient_phone,
                "type": "Patient",
            },
            "type": [{"text": access_level.value}],
        }

    def _create_episode(self, document: EpisodeOfCare) -> Episode:
        body = self.gateway.create("EpisodeOfCare", document)
        episode = Episode.from_resource(decode_json(body, "create"))
        logger.info(
            "episode_started",
            episode_id=episode.id,
            patient=episode.patient_ref,
            access_level=episode.access_level.value,
        )
        return episode

    def _update_episode(self, episode_id: str, document: JsonObject) -> Episode:
        body = self.gateway.update("EpisodeOfCare", episode_id, document)
        return Episode.from_resource(decode_json(body, "update"))
