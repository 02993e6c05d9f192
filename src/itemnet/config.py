"""
Configuration for an itemnet run.

Options live in a TOML file under an ``[itemnet]`` table, or are passed as
keyword overrides. The OpenAI API key is read from the environment, optionally
populated from a local ``secrets.toml`` file.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import toml

from .errors import ConfigError

logger = logging.getLogger(__name__)

EMBEDDING_BACKENDS = ("openai", "tfidf")
NETWORK_METHODS = ("glasso", "tmfg")


@dataclass(frozen=True)
class PipelineConfig:
    """Recognized options for a single pipeline run."""

    # Item filtering
    exclude: tuple[int, ...] = ()

    # Stability loop
    stability_threshold: float = 0.75
    n_bootstrap: int = 100
    max_iterations: int = 3
    seed: int | None = None

    # Embeddings
    embedding_backend: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    cache_dir: str = "./cache/joblib_cache"

    # Network estimation
    network_method: str = "glasso"
    ebic_gamma: float = 0.5
    n_lambda: int = 30
    lambda_min_ratio: float = 0.01
    wto_threshold: float = 0.20
    walktrap_steps: int = 4

    # Resampling execution
    use_parallel: bool = False
    max_workers: int | None = None

    # Centrality
    centrality_n_bootstrap: int = 100
    case_drop_n_bootstrap: int = 25
    cs_correlation: float = 0.7
    cs_level: float = 0.95

    def __post_init__(self):
        # TOML arrays arrive as lists
        object.__setattr__(self, "exclude", tuple(int(i) for i in self.exclude))
        validate_config(self)

    @property
    def network_params(self) -> dict:
        if self.network_method == "glasso":
            return {
                "gamma": self.ebic_gamma,
                "n_lambda": self.n_lambda,
                "lambda_min_ratio": self.lambda_min_ratio,
            }
        return {}

    @property
    def walktrap_params(self) -> dict:
        return {"steps": self.walktrap_steps}

    def with_overrides(self, **overrides) -> "PipelineConfig":
        """Returns a copy with the given options replaced (None values are ignored)."""
        _check_known(overrides)
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def validate_config(config: PipelineConfig) -> None:
    """Raises ConfigError if any option is out of range."""
    if not 0 < config.stability_threshold <= 1:
        raise ConfigError(f"stability_threshold must be in (0, 1], got {config.stability_threshold}")
    if config.max_iterations < 1:
        raise ConfigError(f"max_iterations must be >= 1, got {config.max_iterations}")
    if config.n_bootstrap < 1:
        raise ConfigError(f"n_bootstrap must be >= 1, got {config.n_bootstrap}")
    if config.embedding_backend not in EMBEDDING_BACKENDS:
        raise ConfigError(
            f"embedding_backend must be one of {EMBEDDING_BACKENDS}, got {config.embedding_backend!r}"
        )
    if config.network_method not in NETWORK_METHODS:
        raise ConfigError(
            f"network_method must be one of {NETWORK_METHODS}, got {config.network_method!r}"
        )
    if not 0 <= config.wto_threshold <= 1:
        raise ConfigError(f"wto_threshold must be between 0 and 1, got {config.wto_threshold}")
    if config.ebic_gamma < 0:
        raise ConfigError(f"ebic_gamma must be non-negative, got {config.ebic_gamma}")
    if config.walktrap_steps < 1:
        raise ConfigError(f"walktrap_steps must be >= 1, got {config.walktrap_steps}")
    if any(i < 0 for i in config.exclude):
        raise ConfigError(f"exclude positions must be non-negative, got {list(config.exclude)}")
    if config.centrality_n_bootstrap < 0 or config.case_drop_n_bootstrap < 0:
        raise ConfigError("centrality bootstrap counts must be non-negative.")
    if not 0 < config.cs_correlation < 1 or not 0 < config.cs_level <= 1:
        raise ConfigError("cs_correlation must be in (0, 1) and cs_level in (0, 1].")


def _check_known(options: dict) -> None:
    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(options) - known)
    if unknown:
        raise ConfigError(f"Unknown configuration option(s): {', '.join(unknown)}")


def load_config(path: str | os.PathLike | None = None, **overrides) -> PipelineConfig:
    """Loads a PipelineConfig from a TOML file's ``[itemnet]`` table.

    Args:
        path: Path to the TOML file. If None, defaults are used.
        **overrides: Options that take precedence over the file.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing, unparsable, or holds invalid options.
    """
    options = {}
    if path is not None:
        try:
            document = toml.load(Path(path))
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except toml.TomlDecodeError as e:
            raise ConfigError(f"Invalid TOML in config file {path}: {e}") from e
        options = dict(document.get("itemnet", {}))
        _check_known(options)

    _check_known(overrides)
    options.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return PipelineConfig(**options)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_local_secrets(path: str | os.PathLike = "secrets.toml") -> bool:
    """Loads the ``[default]`` table of a local secrets file into the environment.

    Existing environment variables are not overwritten.

    Returns:
        True if the file was found and loaded.
    """
    try:
        secrets = toml.load(Path(path))["default"]
    except FileNotFoundError:
        logger.debug("%s not found; relying on environment variables.", path)
        return False
    except KeyError:
        logger.warning("Invalid format in %s. Ensure a [default] section is present.", path)
        return False

    for key, value in secrets.items():
        os.environ.setdefault(key, str(value))
    return True
