"""Shared dependencies for routers."""

from typing import Annotated

from fastapi import Depends

from src.clients.event_channel import get_event_channel
from src.clients.fhir_datastore import get_fhir_datastore_service
from src.clients.mpi import get_mdm_mpi_service, get_mpi_service
from src.matching.pipeline import MatchingPipeline
from src.services.event_channel import EventChannel
from src.services.fhir_datastore_service import FHIRDatastoreService
from src.services.link_resolver import LinkResolver
from src.services.mpi_service import MPIService
from src.services.patient_query_service import PatientQueryService
from src.settings import settings

# Typed dependency aliases for use in endpoint signatures
FHIRDatastoreServiceDep = Annotated[
    FHIRDatastoreService, Depends(get_fhir_datastore_service)
]
MPIServiceDep = Annotated[MPIService, Depends(get_mpi_service)]
EventChannelDep = Annotated[EventChannel, Depends(get_event_channel)]


def get_link_resolver(
    mdm_mpi: Annotated[MPIService, Depends(get_mdm_mpi_service)],
) -> LinkResolver:
    """Link resolver bound to the configured MDM registry."""
    return LinkResolver(mdm_mpi, max_concurrency=settings.link_resolution_concurrency)


LinkResolverDep = Annotated[LinkResolver, Depends(get_link_resolver)]


def get_matching_pipeline(
    datastore: FHIRDatastoreServiceDep,
    mpi: MPIServiceDep,
    events: EventChannelDep,
) -> MatchingPipeline:
    """Matching pipeline wired to the configured upstreams and topics."""
    return MatchingPipeline(
        datastore,
        mpi,
        events,
        bundle_topic=settings.kafka_bundle_topic,
        async_bundle_topic=settings.kafka_async_bundle_topic,
        stub_profile=settings.patient_profile_for_stub_patient,
    )


def get_patient_query_service(
    datastore: FHIRDatastoreServiceDep,
    mpi: MPIServiceDep,
    link_resolver: LinkResolverDep,
) -> PatientQueryService:
    """Patient query service joining MPI identities with datastore records."""
    return PatientQueryService(
        datastore, mpi, link_resolver, patient_resources=settings.patient_resources
    )


MatchingPipelineDep = Annotated[MatchingPipeline, Depends(get_matching_pipeline)]
PatientQueryServiceDep = Annotated[
    PatientQueryService, Depends(get_patient_query_service)
]
