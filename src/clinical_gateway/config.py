"""Configuration management for the clinical gateway."""

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clinical_gateway.errors import ConfigurationError
from clinical_gateway.resource_gateway import FhirStoreClient
from clinical_gateway.timeline import AggregationFailurePolicy


class Settings(BaseSettings):
    """
    Application settings loaded from ``CLINICAL_*`` environment variables and an
    optional ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLINICAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # FHIR store
    fhir_base_url: str = Field(
        default="",
        description="Explicit FHIR store base URL; overrides the dataset settings",
    )
    fhir_api_root: str = Field(
        default="https://healthcare.googleapis.com/v1",
        description="Cloud Healthcare API root",
    )
    gcp_project: str = Field(default="", description="Cloud project of the store")
    gcp_location: str = Field(default="europe-west4")
    dataset_id: str = Field(default="", description="Healthcare dataset id")
    fhir_store_id: str = Field(default="", description="FHIR store id")
    fhir_timeout: int = Field(
        default=10,
        gt=0,
        description="Timeout in seconds for each FHIR store call",
    )

    # Credentials for the FHIR store
    fhir_token: str = Field(default="", description="Static bearer token")
    auth_api_key: str = Field(default="", description="Client-credentials API key")
    auth_private_key_path: str = Field(
        default="",
        description="Path to the RSA private key, named <key_id>.pem",
    )
    auth_token_url: str = Field(default="", description="OAuth2 token endpoint")

    # Terminology
    ocl_api_url: str = Field(default="", description="OpenConceptLab API base URL")
    ocl_token: str = Field(default="", description="OpenConceptLab API token")
    ocl_timeout: int = Field(default=30, gt=0)

    # OTP verification
    engagement_api_url: str = Field(
        default="",
        description="Base URL of the engagement service that verifies OTPs",
    )
    otp_timeout: int = Field(default=10, gt=0)

    # Aggregated views
    request_timeout: float = Field(
        default=120,
        ge=1,
        description="Deadline in seconds for building one aggregated view",
    )
    aggregation_failure_policy: AggregationFailurePolicy = Field(
        default=AggregationFailurePolicy.FAIL,
        description="'fail' re-raises a failed per-type search, 'degrade' empties it",
    )
    visit_summary_page_size: int = Field(default=50, gt=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="Render logs as JSON lines")

    # HTTP surface
    flask_host: str = Field(default="127.0.0.1")
    flask_port: int = Field(default=8080)

    @model_validator(mode="after")
    def check_fhir_store(self) -> "Settings":
        dataset = (self.gcp_project, self.dataset_id, self.fhir_store_id)
        if not self.fhir_base_url and not all(dataset):
            raise ValueError(
                "either fhir_base_url or gcp_project, dataset_id and fhir_store_id "
                "must be set"
            )
        if not self.fhir_token and not (
            self.auth_api_key and self.auth_private_key_path and self.auth_token_url
        ):
            raise ValueError(
                "either fhir_token or auth_api_key, auth_private_key_path and "
                "auth_token_url must be set"
            )
        return self

    @property
    def store_url(self) -> str:
        if self.fhir_base_url:
            return self.fhir_base_url
        return FhirStoreClient.store_url(
            self.fhir_api_root,
            self.gcp_project,
            self.gcp_location,
            self.dataset_id,
            self.fhir_store_id,
        )


def load_settings(**overrides: object) -> Settings:
    """
    Build and validate settings once.

    :param overrides: Values that take precedence over the environment.
    :raises ConfigurationError: If a setting is missing or invalid.
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as err:
        raise ConfigurationError(f"invalid configuration: {err}") from err
