"""
itemnet: content-validity assessment of survey items with embeddings,
Exploratory Graph Analysis, UVA and bootEGA.
"""

from .config import PipelineConfig, load_config
from .errors import (
    ConfigError,
    DegenerateReductionError,
    EmbeddingFailure,
    EstimationError,
    InputError,
    ItemnetError,
    MappingError,
    NonConvergenceWarning,
)
from .pipeline import PipelineResult, run_pipeline

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "DegenerateReductionError",
    "EmbeddingFailure",
    "EstimationError",
    "InputError",
    "ItemnetError",
    "MappingError",
    "NonConvergenceWarning",
    "PipelineConfig",
    "PipelineResult",
    "load_config",
    "run_pipeline",
]
