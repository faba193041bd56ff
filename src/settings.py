"""
Application settings for the MPI mediator.

- Defaults match the docker-compose service names used in development.
- For production, set environment variables to override fields.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """MPI mediator configuration."""

    mediator_urn: str = Field(
        default="urn:mediator:mpi-mediator",
        description="URN reported in every mediator response envelope",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    # FHIR Datastore Configuration
    fhir_datastore_url: str = Field(
        default="http://hapi-fhir:8080",
        description="Base URL of the FHIR datastore (clinical data)",
    )
    fhir_datastore_timeout: float = Field(
        default=30.0,
        description="Timeout for FHIR datastore requests in seconds",
    )

    # MPI Configuration
    mpi_url: str = Field(
        default="http://santedb-mpi:8080",
        description="Base URL of the Master Patient Index",
    )
    mpi_auth_enabled: bool = Field(
        default=False,
        description="Send an OAuth2 bearer token with MPI requests",
    )
    mpi_client_id: str = Field(default="", description="MPI OAuth2 client ID")
    mpi_client_secret: str = Field(default="", description="MPI OAuth2 client secret")
    mpi_timeout: float = Field(
        default=30.0,
        description="Timeout for MPI requests in seconds",
    )

    # Secondary MPI Configuration (always authenticated)
    secondary_mpi_url: str = Field(
        default="http://santempi:8080",
        description="Base URL of the secondary MPI",
    )
    secondary_mpi_client_id: str = Field(
        default="", description="Secondary MPI OAuth2 client ID"
    )
    secondary_mpi_client_secret: str = Field(
        default="", description="Secondary MPI OAuth2 client secret"
    )
    secondary_mpi_timeout: float = Field(
        default=30.0,
        description="Timeout for secondary MPI requests in seconds",
    )

    token_scopes: list[str] = Field(
        default=["*"],
        description="Scopes requested in the client-credentials exchange",
    )

    # MDM Configuration
    mdm_registry: Literal["mpi", "secondary_mpi"] = Field(
        default="mpi",
        description="Registry consulted when expanding golden-id links",
    )
    link_resolution_concurrency: int = Field(
        default=10,
        description="Maximum concurrent MPI fetches during link expansion",
    )
    patient_profile_for_stub_patient: str | None = Field(
        default=None,
        description="Profile URL stamped on gutted patient stubs",
    )
    patient_resources: list[str] = Field(
        default=["Encounter", "Observation", "Appointment"],
        description="Resource types fetched for a patient $everything request",
    )

    # Kafka Configuration
    kafka_bootstrap_servers: str = Field(
        default="kafka:9092",
        description="Comma-separated list of Kafka brokers",
    )
    kafka_client_id: str = Field(default="mpi-mediator")
    kafka_consumer_group: str = Field(default="mpi-mediator")
    kafka_bundle_topic: str = Field(
        default="2xx",
        description="Topic receiving persisted bundles with full patient data",
    )
    kafka_async_bundle_topic: str = Field(
        default="2xx-async",
        description="Topic holding bundles awaiting asynchronous matching",
    )
    kafka_error_topic: str = Field(
        default="errors",
        description="Dead-letter topic for failed asynchronous runs",
    )
    kafka_publish_retries: int = Field(
        default=3,
        description="Publish attempts before a PublishError is raised",
    )
    kafka_retry_backoff: float = Field(
        default=0.5,
        description="Initial backoff between publish attempts in seconds",
    )
    kafka_consumer_enabled: bool = Field(
        default=True,
        description="Start the asynchronous matching consumer with the app",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
