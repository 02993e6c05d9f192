"""
Error taxonomy for the itemnet pipeline.

Fatal errors derive from ItemnetError and name the stage they occurred in.
Recoverable conditions (degenerate reduction, non-convergence) are handled
inside the pipeline and reported rather than propagated.
"""


class ItemnetError(Exception):
    """Base class for all pipeline errors."""

    stage = "pipeline"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class ConfigError(ItemnetError, ValueError):
    stage = "config"


class InputError(ItemnetError, ValueError):
    """Missing or malformed item file, or too few usable items."""

    stage = "input"


class EmbeddingFailure(ItemnetError, RuntimeError):
    """The embedding provider failed or returned a mismatched shape."""

    stage = "embedding"


class EstimationError(ItemnetError, RuntimeError):
    """A network or structure could not be estimated at all."""

    stage = "estimation"


class MappingError(ItemnetError, LookupError):
    """An item label could not be resolved to an original phrase."""

    stage = "mapping"


class DegenerateReductionError(ItemnetError):
    """UVA left fewer than two items; carries the reduced matrix.

    Recoverable: the iteration controller catches it and ends the loop.
    """

    stage = "uva"

    def __init__(self, matrix, message: str | None = None, removed: list | None = None):
        self.matrix = matrix
        self.removed = removed or []
        super().__init__(
            message or f"Redundancy reduction left {matrix.n_items} item(s); cannot estimate a network."
        )


class NonConvergenceWarning(UserWarning):
    """The stability loop hit its iteration cap with unstable items remaining."""
