"""
Golden-id link resolution (MDM expansion).

Given one patient reference, walks the ``link`` graph held by an MPI and
returns every reference in the same equivalence set. Say both Patient/1 and
Patient/2 are matched to the golden Patient/3:

    Patient/1 --> Patient/3
    Patient/2 --> Patient/3

Resolving any of the three returns all three, root first.
"""

import asyncio
import logging
from typing import Any

from src.services.mpi_service import MPIService, relative_patient_ref

logger = logging.getLogger(__name__)


def linked_references(resource: dict[str, Any] | None) -> list[str]:
    """Extract the normalized ``link[].other.reference`` values of a resource."""
    if not resource:
        return []
    refs: list[str] = []
    for link in resource.get("link") or []:
        ref = (link.get("other") or {}).get("reference")
        if ref:
            refs.append(relative_patient_ref(ref))
    return refs


class LinkResolver:
    """Breadth-first expansion of patient links against one MPI."""

    def __init__(self, mpi: MPIService, max_concurrency: int = 10):
        self._mpi = mpi
        self._max_concurrency = max(1, max_concurrency)

    async def resolve_links(self, root_ref: str) -> list[str]:
        """
        Resolve the full link set for a patient reference.

        Each frontier is fetched concurrently; references are marked visited
        before they are scheduled so nothing is fetched twice.

        Args:
            root_ref: Reference to start from, e.g. ``Patient/1``

        Returns:
            Deduplicated references, root first, in breadth-first order

        Raises:
            UpstreamError: On transport or parse errors (first error wins)
        """
        root = relative_patient_ref(root_ref)
        link_set = [root]
        visited = {root}
        frontier = [root]
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def fetch(ref: str) -> dict[str, Any] | None:
            async with semaphore:
                return await self._mpi.fetch_resource(ref)

        while frontier:
            tasks = [asyncio.ensure_future(fetch(ref)) for ref in frontier]
            try:
                resources = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise
            next_frontier: list[str] = []
            for resource in resources:
                for ref in linked_references(resource):
                    if ref not in visited:
                        visited.add(ref)
                        link_set.append(ref)
                        next_frontier.append(ref)
            frontier = next_frontier

        logger.debug("Resolved %s to %d linked references", root, len(link_set))
        return link_set
