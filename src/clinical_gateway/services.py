"""
Composition root: builds the gateway's collaborators from validated settings.
"""

from dataclasses import dataclass

from clinical_gateway.audit import FhirAuditSink
from clinical_gateway.config import Settings
from clinical_gateway.credentials import (
    ClientCredentialsTokenSource,
    StaticTokenSource,
    TokenSource,
)
from clinical_gateway.episodes import EpisodeController
from clinical_gateway.errors import ConfigurationError
from clinical_gateway.notifications import LoggingPublisher
from clinical_gateway.otp import EngagementOtpVerifier
from clinical_gateway.resource_gateway import FhirStoreClient
from clinical_gateway.terminology import OclClient
from clinical_gateway.timeline import TimelineAggregator


@dataclass(frozen=True)
class Services:
    """
    Everything the HTTP surface needs.

    ``terminology`` is ``None`` when no terminology server is configured.
    """

    gateway: FhirStoreClient
    episodes: EpisodeController
    timeline: TimelineAggregator
    terminology: OclClient | None = None


def build_token_source(settings: Settings) -> TokenSource:
    if settings.fhir_token:
        return StaticTokenSource(settings.fhir_token)
    try:
        return ClientCredentialsTokenSource.from_key_file(
            settings.auth_api_key,
            settings.auth_private_key_path,
            settings.auth_token_url,
        )
    except OSError as err:
        raise ConfigurationError(
            f"cannot read private key {settings.auth_private_key_path}: {err}"
        ) from err


def build_services(settings: Settings) -> Services:
    """
    Assemble the controllers described by ``settings``.

    :raises ConfigurationError: If a required collaborator cannot be built.
    """
    if not settings.engagement_api_url:
        raise ConfigurationError("engagement_api_url must be set to verify OTPs")

    gateway = FhirStoreClient(
        settings.store_url,
        build_token_source(settings),
        timeout=settings.fhir_timeout,
    )
    episodes = EpisodeController(
        gateway,
        EngagementOtpVerifier(
            settings.engagement_api_url, timeout=settings.otp_timeout
        ),
        FhirAuditSink(gateway),
        LoggingPublisher(),
    )
    timeline = TimelineAggregator(
        gateway,
        failure_policy=settings.aggregation_failure_policy,
        request_timeout=settings.request_timeout,
        page_size=settings.visit_summary_page_size,
    )

    terminology = None
    if settings.ocl_api_url or settings.ocl_token:
        terminology = OclClient(
            settings.ocl_api_url, settings.ocl_token, settings.ocl_timeout
        )

    return Services(
        gateway=gateway, episodes=episodes, timeline=timeline, terminology=terminology
    )
