"""
Bundle and patient transformations.

Pure functions that prepare bundles for the datastore (gutting patients down
to MPI-linked stubs) and for the event queue (restoring full patients).
"""

from src.transform.bundle import (
    extract_patient_entries,
    extract_patient_references,
    gut_patient,
    merge_bundles,
    modify_bundle,
    restore_patient_entries,
    rewrite_references,
)
from src.transform.patient import (
    MpiTransformResult,
    PatientTransformRecord,
    patient_projector,
    project_patient_for_mpi,
    restore_patient_resource,
)

__all__ = [
    "MpiTransformResult",
    "PatientTransformRecord",
    "extract_patient_entries",
    "extract_patient_references",
    "gut_patient",
    "merge_bundles",
    "modify_bundle",
    "patient_projector",
    "project_patient_for_mpi",
    "restore_patient_entries",
    "restore_patient_resource",
    "rewrite_references",
]
