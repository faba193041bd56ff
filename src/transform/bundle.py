"""
Bundle transformations for the matching pipeline.

All functions are pure: they never mutate their inputs and perform no I/O.

The datastore only keeps clinical data, so before persistence every embedded
Patient is "gutted" down to a stub that links to its MPI identity. The copy
published to the event queue gets the full patients back.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from src.exceptions import MissingIdError
from src.transform.patient import PatientTransformRecord

logger = logging.getLogger(__name__)


def extract_patient_entries(bundle: dict[str, Any]) -> list[dict[str, Any]]:
    """Return all entries whose resource is a Patient."""
    return [
        entry
        for entry in bundle.get("entry") or []
        if (entry.get("resource") or {}).get("resourceType") == "Patient"
    ]


def _iter_references(node: Any) -> Any:
    """Yield every value held under a ``reference`` key, depth first."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "reference" and isinstance(value, str):
                yield value
            else:
                yield from _iter_references(value)
    elif isinstance(node, list):
        for item in node:
            yield from _iter_references(item)


def extract_patient_references(bundle: dict[str, Any]) -> list[str]:
    """
    Return the unique relative patient references (``Patient/<id>``) used in
    the bundle, in order of first appearance.
    """
    refs: list[str] = []
    for ref in _iter_references(bundle.get("entry") or []):
        parts = ref.split("/")
        if len(parts) == 2 and parts[0] == "Patient" and parts[1] and ref not in refs:
            refs.append(ref)
    return refs


def _rewrite(node: Any, old_ref: str, new_ref: str) -> Any:
    if isinstance(node, dict):
        return {
            key: (
                new_ref
                if key == "reference" and value == old_ref
                else _rewrite(value, old_ref, new_ref)
            )
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [_rewrite(item, old_ref, new_ref) for item in node]
    return node


def rewrite_references(
    bundle: dict[str, Any], old_ref: str, new_ref: str
) -> dict[str, Any]:
    """
    Replace every reference equal to ``old_ref`` with ``new_ref``.

    Matching is exact on the whole reference string, so ``Patient/1`` never
    touches ``Patient/12``.
    """
    return _rewrite(bundle, old_ref, new_ref)


def _put_request(resource: dict[str, Any]) -> dict[str, str]:
    return {
        "method": "PUT",
        "url": f"{resource.get('resourceType')}/{resource.get('id')}",
    }


def gut_patient(
    patient_entry: dict[str, Any],
    canonical_ref: str,
    profile: str | None = None,
) -> dict[str, Any]:
    """
    Replace a patient entry's resource with a stub linking to ``canonical_ref``.

    Args:
        patient_entry: Bundle entry holding a Patient
        canonical_ref: Reference to the MPI patient, e.g. ``Patient/abc``
        profile: Optional profile URL stamped on the stub

    Returns:
        New entry with the stub resource and a PUT request
    """
    resource = patient_entry.get("resource") or {}
    stub: dict[str, Any] = {
        "resourceType": resource.get("resourceType", "Patient"),
        "id": resource.get("id"),
        "link": [{"type": "refer", "other": {"reference": canonical_ref}}],
    }
    if profile:
        stub["meta"] = {"profile": [profile]}

    gutted: dict[str, Any] = {"resource": stub, "request": _put_request(stub)}
    if "fullUrl" in patient_entry:
        gutted = {"fullUrl": patient_entry["fullUrl"], **gutted}
    return gutted


def modify_bundle(
    bundle: dict[str, Any],
    patient_map: dict[str, PatientTransformRecord] | None = None,
    profile: str | None = None,
) -> dict[str, Any]:
    """
    Prepare a bundle for submission to the datastore.

    - ``document`` bundles become ``transaction`` bundles
    - every entry gets a ``PUT <type>/<id>`` request
    - every patient entry in ``patient_map`` is gutted against its MPI id

    Args:
        bundle: The incoming bundle
        patient_map: Transform records keyed by patient entry fullUrl
        profile: Optional profile for gutted patient stubs

    Returns:
        The modified copy of the bundle

    Raises:
        MissingIdError: If a mapped MPI response patient has no id
    """
    patient_map = patient_map or {}
    modified = copy.deepcopy(bundle)

    if modified.get("type") == "document":
        logger.info("Converting document bundle to transaction bundle")
        modified["type"] = "transaction"

    entries: list[dict[str, Any]] = []
    for entry in modified.get("entry") or []:
        resource = entry.get("resource") or {}
        record = patient_map.get(entry.get("fullUrl", ""))

        if resource.get("resourceType") == "Patient" and record is not None:
            mpi_patient = record.mpi_response_patient or {}
            mpi_id = mpi_patient.get("id")
            if not mpi_id:
                raise MissingIdError(
                    f"MPI response for {entry.get('fullUrl')} has no patient id"
                )
            entries.append(gut_patient(entry, f"Patient/{mpi_id}", profile))
        else:
            entries.append({**entry, "request": _put_request(resource)})

    if "entry" in modified or entries:
        modified["entry"] = entries
    return modified


def restore_patient_entries(
    bundle: dict[str, Any],
    patient_map: dict[str, PatientTransformRecord],
) -> dict[str, Any]:
    """
    Put restored full patients back into a copy of the bundle.

    Entries are matched on fullUrl; a restored patient without a matching
    entry is appended.
    """
    restored_bundle = copy.deepcopy(bundle)
    entries = restored_bundle.setdefault("entry", [])

    for full_url, record in patient_map.items():
        if record.restored_patient is None:
            continue

        mpi_id = (record.mpi_response_patient or {}).get("id")
        patient_entry = {
            "fullUrl": full_url,
            "resource": copy.deepcopy(record.restored_patient),
            "request": {"method": "PUT", "url": f"Patient/{mpi_id}"},
        }

        index = next(
            (i for i, entry in enumerate(entries) if entry.get("fullUrl") == full_url),
            None,
        )
        if index is not None:
            logger.debug(
                "Replacing patient (fullUrl: %s) in bundle with restored copy",
                full_url,
            )
            entries[index] = patient_entry
        else:
            logger.debug(
                "Adding restored patient (fullUrl: %s), no matching entry found",
                full_url,
            )
            entries.append(patient_entry)

    return restored_bundle


def merge_bundles(
    bundles: list[dict[str, Any]], bundle_type: str = "searchset"
) -> dict[str, Any]:
    """
    Combine several bundles into one.

    Entries are concatenated in input order, the total counts every entry and
    each source bundle's own links are kept as ``subsection`` links.
    """
    entries: list[dict[str, Any]] = []
    links: list[dict[str, Any]] = []

    for bundle in bundles:
        entries.extend(copy.deepcopy(bundle.get("entry") or []))
        for link in bundle.get("link") or []:
            links.append({**link, "relation": "subsection"})

    merged: dict[str, Any] = {
        "resourceType": "Bundle",
        "id": str(uuid4()),
        "meta": {"lastUpdated": datetime.now(timezone.utc).isoformat()},
        "type": bundle_type,
        "total": len(entries),
        "link": links,
        "entry": entries,
    }
    return merged
