"""Reference planner plugins."""

from cpe.plugins.cost_estimator import CostEstimatorPlugin
from cpe.plugins.patterns import PatternProposerPlugin
from cpe.plugins.reference_data import (
    HttpReferenceSource,
    ReferenceDataProposerPlugin,
    ReferenceEntity,
    StaticReferenceSource,
)

__all__ = [
    "CostEstimatorPlugin",
    "HttpReferenceSource",
    "PatternProposerPlugin",
    "ReferenceDataProposerPlugin",
    "ReferenceEntity",
    "StaticReferenceSource",
]
