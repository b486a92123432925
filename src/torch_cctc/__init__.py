"""
torch-cctc: Context-dependent CTC training objective for PyTorch

This package computes the CCTC (context-dependent Connectionist Temporal
Classification) objective and its derivative w.r.t. the neural network
output, for training acoustic models whose label probabilities depend on a
truncated phone history.

Key Features:
- Forward-backward over per-utterance supervision graphs in float64
- Batched lookups: one gather per table regardless of the number of arcs
- Full-space normalization term over the all-labels HMM
- Failure reporting on non-finite derivatives instead of NaN gradients
- Autograd function and nn.Module loss wrappers
"""

from .backend import LookupBackend, TorchBackend
from .indexes import LookupIndexes, compute_lookup_indexes
from .negative import CctcNegativeComputation
from .nn import CctcLoss, CctcObjectiveFunction, cctc_objective
from .options import CctcTrainingOptions
from .positive import CctcComputation, CctcPositiveComputation
from .supervision import Arc, CctcSupervision, append_supervisions
from .training import CctcCommonComputation, CctcForwardResult
from .transition_model import CctcTransitionModel
from .validation import (
    CctcConfigurationError,
    CctcConsistencyError,
    CctcNumericalError,
    CctcUsageError,
)

__version__ = "0.1.0"

__all__ = [
    # Core API
    "CctcCommonComputation",
    "CctcForwardResult",
    "CctcTrainingOptions",
    # Sub-computations
    "CctcComputation",
    "CctcPositiveComputation",
    "CctcNegativeComputation",
    # Model and supervision
    "CctcTransitionModel",
    "CctcSupervision",
    "Arc",
    "append_supervisions",
    # Lookup
    "LookupIndexes",
    "compute_lookup_indexes",
    "LookupBackend",
    "TorchBackend",
    # Neural network modules
    "CctcLoss",
    "CctcObjectiveFunction",
    "cctc_objective",
    # Errors
    "CctcConfigurationError",
    "CctcConsistencyError",
    "CctcNumericalError",
    "CctcUsageError",
]
