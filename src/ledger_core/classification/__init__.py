"""
Transaction classification.

Memory, user rules, standard taxonomy, regex fallback and AI, in that
order of precedence.
"""

from .memory import MemoryEntry, MemoryIndex, build_memory_index, normalize_description
from .pipeline import (
    ClassificationPipeline,
    ClassificationReport,
    ClassificationSource,
    ClassifiedTransaction,
    find_category,
)
from .taxonomy import RegexFallback, TaxonomyConfig, TaxonomyError, load_taxonomy

__all__ = [
    "MemoryEntry",
    "MemoryIndex",
    "build_memory_index",
    "normalize_description",
    "ClassificationPipeline",
    "ClassificationReport",
    "ClassificationSource",
    "ClassifiedTransaction",
    "find_category",
    "RegexFallback",
    "TaxonomyConfig",
    "TaxonomyError",
    "load_taxonomy",
]
