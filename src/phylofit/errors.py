"""
Exceptions and warnings raised while fitting tree models.
"""


class PhyloFitError(ValueError):
    """Base class for fatal fitting errors."""


class ConfigurationError(PhyloFitError):
    """Incompatible or malformed options."""


class DataError(PhyloFitError):
    """Inputs that cannot be reconciled (e.g. tree and alignment names)."""


class ModelError(PhyloFitError):
    """Operation not supported by the current tree model."""


class PhyloFitWarning(UserWarning):
    """Non-fatal condition; the affected unit is skipped or reduced."""
