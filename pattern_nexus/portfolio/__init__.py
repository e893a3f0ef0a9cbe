"""Cross-project registry and aggregation."""

from .signature import compute_signature, normalize_content
from .registry import ProjectRegistry
from .aggregator import GlobalAggregator

__all__ = [
    "compute_signature",
    "normalize_content",
    "ProjectRegistry",
    "GlobalAggregator",
]
