"""Error types and input validation for CCTC training computations.

The validators raise informative errors at construction time so that a
dimension mismatch between the supervision, the transition model and the
network output never reaches the forward-backward code.

Error taxonomy:
    CctcConfigurationError: dimension mismatch or out-of-range index.
    CctcConsistencyError: forward and backward totals disagree.
    CctcNumericalError: non-finite derivatives where no failure flag can be returned.
    CctcUsageError: forward/backward called out of order.
"""

import warnings
from typing import Optional

import torch
from torch import Tensor

__all__ = [
    "CctcConfigurationError",
    "CctcConsistencyError",
    "CctcNumericalError",
    "CctcUsageError",
    "validate_nnet_output",
    "validate_weights",
    "validate_num_sequences",
    "validate_deriv_buffer",
    "validate_device_consistency",
    "count_non_finite",
]


class CctcConfigurationError(ValueError):
    """Inputs disagree on dimensions, or an index is out of range."""


class CctcConsistencyError(RuntimeError):
    """Forward and backward passes produced different total log-probabilities."""


class CctcNumericalError(RuntimeError):
    """Non-finite values were found in the derivatives."""


class CctcUsageError(RuntimeError):
    """A one-shot computation was driven out of order."""


def validate_nnet_output(
    nnet_output: Tensor,
    num_output_indexes: int,
    num_rows: Optional[int] = None,
    name: str = "nnet_output",
) -> None:
    r"""validate_nnet_output(nnet_output, num_output_indexes, num_rows=None, name='nnet_output') -> None

    Validates the shape and dtype of the raw network output.

    Args:
        nnet_output (Tensor): tensor to validate, expected shape
          :math:`(\text{frames} \times \text{sequences}, \text{output indexes})`
        num_output_indexes (int): expected number of columns
        num_rows (int, optional): expected number of rows. Default: ``None``
        name (str, optional): name to use in error messages. Default: ``"nnet_output"``

    Raises:
        CctcConfigurationError: If the tensor is not 2D or has the wrong shape.

    Warns:
        UserWarning: If the dtype is not floating point.
    """
    if nnet_output.ndim != 2:
        raise CctcConfigurationError(
            f"{name} must be 2D (rows, output_indexes), got {nnet_output.ndim}D"
        )

    if nnet_output.shape[1] != num_output_indexes:
        raise CctcConfigurationError(
            f"{name} has {nnet_output.shape[1]} columns, transition model has "
            f"{num_output_indexes} output indexes"
        )

    if num_rows is not None and nnet_output.shape[0] != num_rows:
        raise CctcConfigurationError(
            f"{name} has {nnet_output.shape[0]} rows, expected {num_rows} "
            f"(num_frames of the supervision)"
        )

    if not nnet_output.dtype.is_floating_point:
        warnings.warn(
            f"{name} should be a floating point tensor, got {nnet_output.dtype}",
            UserWarning,
            stacklevel=3,
        )


def validate_weights(
    weights: Tensor,
    num_history_states: int,
    num_output_indexes: int,
    name: str = "cu_weights",
) -> None:
    r"""Validates the (history states, output indexes) weight matrix.

    Raises:
        CctcConfigurationError: If ``weights`` is not 2D, has the wrong shape,
          or contains negative entries.
    """
    if weights.ndim != 2:
        raise CctcConfigurationError(f"{name} must be 2D, got {weights.ndim}D")

    expected = (num_history_states, num_output_indexes)
    if tuple(weights.shape) != expected:
        raise CctcConfigurationError(
            f"{name} shape {tuple(weights.shape)} doesn't match "
            f"(num_history_states, num_output_indexes) = {expected}"
        )

    if (weights < 0).any():
        raise CctcConfigurationError(f"{name} must be non-negative")


def validate_num_sequences(num_sequences: int, num_frames: int) -> int:
    """Checks that ``num_frames`` splits into ``num_sequences`` equal sequences.

    Returns:
        int: the number of frames per sequence.
    """
    if num_sequences <= 0:
        raise CctcConfigurationError(f"num_sequences must be positive, got {num_sequences}")
    if num_frames % num_sequences != 0:
        raise CctcConfigurationError(
            f"num_frames={num_frames} is not divisible by num_sequences={num_sequences}"
        )
    return num_frames // num_sequences


def validate_deriv_buffer(deriv: Tensor, like: Tensor, name: str = "nnet_output_deriv") -> None:
    """Checks that a caller-owned gradient buffer matches the network output."""
    if deriv.shape != like.shape:
        raise CctcConfigurationError(
            f"{name} shape {tuple(deriv.shape)} doesn't match nnet_output "
            f"shape {tuple(like.shape)}"
        )
    if deriv.device != like.device:
        raise CctcConfigurationError(
            f"{name} is on {deriv.device}, nnet_output is on {like.device}"
        )


def validate_device_consistency(
    *tensors: Tensor,
    names: Optional[list[str]] = None,
) -> None:
    r"""validate_device_consistency(*tensors, names=None) -> None

    Validates that all tensors are on the same device.

    Args:
        *tensors (Tensor): tensors to check (``None`` values are skipped)
        names (list[str], optional): list of names for error messages.
          Default: ``None``

    Raises:
        CctcConfigurationError: If tensors are on different devices.
    """
    valid_tensors = [t for t in tensors if t is not None]
    if len(valid_tensors) <= 1:
        return

    devices = [t.device for t in valid_tensors]
    if len({str(d) for d in devices}) > 1:
        if names is not None:
            valid_names = [n for n, t in zip(names, tensors) if t is not None]
            device_map = dict(zip(valid_names, devices))
        else:
            device_map = {f"tensor_{i}": d for i, d in enumerate(devices)}
        raise CctcConfigurationError(f"Device mismatch: {device_map}")


def count_non_finite(tensor: Tensor) -> tuple[int, int]:
    """Returns ``(nan_count, inf_count)`` for ``tensor``."""
    return int(torch.isnan(tensor).sum().item()), int(torch.isinf(tensor).sum().item())
