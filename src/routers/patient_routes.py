"""Patient and clinical data query endpoints."""

from typing import Annotated

from fastapi import APIRouter, Query, Request, Response

from src.routers.deps import PatientQueryServiceDep
from src.routers.responses import mediator_response

router = APIRouter(prefix="/fhir", tags=["Patient"])

# Parameters consumed by the mediator and never forwarded upstream
MDM_PARAM = "_mdm"

MdmFlag = Annotated[bool, Query(alias=MDM_PARAM)]


def _forwarded_params(request: Request, *consumed: str) -> list[tuple[str, str]]:
    return [
        (key, value)
        for key, value in request.query_params.multi_items()
        if key not in consumed
    ]


@router.get("/Patient")
async def search_patients(
    request: Request,
    queries: PatientQueryServiceDep,
) -> Response:
    """Search the MPI, annotating each match with its datastore stubs."""
    result = await queries.fetch_patient_by_query(_forwarded_params(request))
    return mediator_response(result)


@router.get("/Patient/{patient_id}")
async def get_patient(
    patient_id: str,
    queries: PatientQueryServiceDep,
    projection: str | None = None,
) -> Response:
    """Fetch the full MPI patient behind a datastore patient id."""
    result = await queries.fetch_patient_by_id(patient_id, projection)
    return mediator_response(result)


@router.get("/Patient/{patient_id}/$everything")
async def patient_everything(
    patient_id: str,
    queries: PatientQueryServiceDep,
    mdm: MdmFlag = False,
) -> Response:
    """All configured resources for a patient, optionally across its link set."""
    result = await queries.fetch_everything(patient_id, mdm=mdm)
    return mediator_response(result)


@router.get("/Patient/{patient_id}/$summary")
async def patient_summary(
    patient_id: str,
    request: Request,
    queries: PatientQueryServiceDep,
    mdm: MdmFlag = False,
) -> Response:
    """Patient summary document, optionally merged across its link set."""
    params = _forwarded_params(request, MDM_PARAM)
    result = await queries.fetch_summaries(patient_id, params, mdm=mdm)
    return mediator_response(result)


@router.get("/{resource_type}")
async def search_resources(
    resource_type: str,
    request: Request,
    queries: PatientQueryServiceDep,
) -> Response:
    """
    Forward a search to the datastore.

    A ``<param>:mdm=Patient/<id>`` parameter is expanded to the patient's
    whole link set, e.g. ``subject:mdm=Patient/1`` becomes
    ``subject=Patient/1,Patient/2,Patient/3``.
    """
    result = await queries.search(resource_type, _forwarded_params(request))
    return mediator_response(result)
