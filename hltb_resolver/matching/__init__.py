"""Title normalization, similarity scoring and candidate matching."""

from .mappings import MappingTables, load_mapping_tables
from .matcher import TitleMatcher
from .normalizer import TitleNormalizer
from .similarity import SimilarityCalculator

__all__ = [
    "MappingTables",
    "SimilarityCalculator",
    "TitleMatcher",
    "TitleNormalizer",
    "load_mapping_tables",
]
