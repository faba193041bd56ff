"""
Patient matching for clinical bundles.

This module handles:
- Bundle validation against the datastore
- Patient registration with the MPI
- Persistence of gutted bundles and publication of restored ones
"""

from src.matching.pipeline import MatchingPipeline, PipelineOutcome, PipelineState

__all__ = ["MatchingPipeline", "PipelineOutcome", "PipelineState"]
