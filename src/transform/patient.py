"""
Patient resource projections.

The MPI receives demographics only: extensions and the managing organization
are held back in the PatientTransformRecord and put back when the full patient
is restored for publication.
"""

import copy
from dataclasses import dataclass
from typing import Any

# Fields kept by the partial projection served to callers
PARTIAL_PATIENT_FIELDS = (
    "resourceType",
    "id",
    "identifier",
    "active",
    "name",
    "gender",
    "birthDate",
    "deceasedBoolean",
    "deceasedDateTime",
)


@dataclass
class MpiTransformResult:
    """A patient split into its MPI-facing projection and the withheld parts."""

    patient: dict[str, Any]
    extension: list[dict[str, Any]] | None = None
    managing_organization: dict[str, Any] | None = None


@dataclass
class PatientTransformRecord:
    """Per-entry state carried through the matching pipeline."""

    mpi_transform_result: MpiTransformResult | None = None
    mpi_response_patient: dict[str, Any] | None = None
    restored_patient: dict[str, Any] | None = None


def project_patient_for_mpi(patient: dict[str, Any]) -> MpiTransformResult:
    """Strip extensions and managing organization from a patient for the MPI."""
    projection = copy.deepcopy(patient)
    extension = projection.pop("extension", None)
    managing_organization = projection.pop("managingOrganization", None)
    return MpiTransformResult(
        patient=projection,
        extension=extension,
        managing_organization=managing_organization,
    )


def restore_patient_resource(record: PatientTransformRecord) -> dict[str, Any] | None:
    """
    Rebuild the full patient for a transform record.

    The restored resource carries the original demographics and the withheld
    fields, under the id the MPI assigned. The result is also stored on the
    record.
    """
    transform = record.mpi_transform_result
    if transform is None or record.mpi_response_patient is None:
        return None

    restored = copy.deepcopy(transform.patient)
    mpi_id = record.mpi_response_patient.get("id")
    if mpi_id:
        restored["id"] = mpi_id
    if transform.extension is not None:
        restored["extension"] = copy.deepcopy(transform.extension)
    if transform.managing_organization is not None:
        restored["managingOrganization"] = copy.deepcopy(
            transform.managing_organization
        )

    record.restored_patient = restored
    return restored


def patient_projector(patient: dict[str, Any]) -> dict[str, Any]:
    """Partial projection of a patient: identity and core demographics only."""
    return {key: patient[key] for key in PARTIAL_PATIENT_FIELDS if key in patient}
