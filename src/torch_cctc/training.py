r"""CCTC training computation: the part both objective terms share.

:class:`CctcCommonComputation` exponentiates the network output, derives the
denominators :math:`D = \exp(y) W^\top`, and owns one
:class:`~torch_cctc.positive.CctcPositiveComputation` (constrained to the
supervision) and one :class:`~torch_cctc.negative.CctcNegativeComputation`
(the full output space). It is single use::

    computation = CctcCommonComputation(opts, trans_model, weights, supervision,
                                        num_sequences, nnet_output)
    result = computation.forward()
    ok = computation.backward(nnet_output_deriv)

Calling ``forward`` twice, or ``backward`` before ``forward``, raises
:class:`~torch_cctc.validation.CctcUsageError`.

Inputs are borrowed, not copied: ``trans_model``, ``cu_weights``,
``supervision`` and ``nnet_output`` must stay alive and unmodified until
``backward`` has returned or :meth:`CctcCommonComputation.release` is called.
"""

import warnings
from typing import NamedTuple, Optional

import torch
from torch import Tensor

from .backend import LookupBackend, TorchBackend
from .negative import CctcNegativeComputation
from .options import CctcTrainingOptions
from .positive import CctcPositiveComputation
from .supervision import CctcSupervision
from .transition_model import CctcTransitionModel
from .validation import (
    CctcConfigurationError,
    CctcUsageError,
    count_non_finite,
    validate_deriv_buffer,
    validate_device_consistency,
    validate_nnet_output,
    validate_num_sequences,
    validate_weights,
)

__all__ = ["CctcCommonComputation", "CctcForwardResult"]


class CctcForwardResult(NamedTuple):
    """Objective parts returned by :meth:`CctcCommonComputation.forward`.

    Attributes:
        positive_objf: ``weight * positive log-prob``.
        negative_objf: ``-denominator_scale * weight * negative log-prob``.
        objf_denominator: ``weight * num_frames``, for per-frame reporting.
    """

    positive_objf: float
    negative_objf: float
    objf_denominator: float

    @property
    def objective(self) -> float:
        """Per-frame objective, ``(positive_objf + negative_objf) / objf_denominator``."""
        return (self.positive_objf + self.negative_objf) / self.objf_denominator


class CctcCommonComputation:
    r"""Forward-backward from the network output for one minibatch.

    Args:
        opts (CctcTrainingOptions): training options.
        trans_model (CctcTransitionModel): transition model.
        cu_weights (Tensor): :math:`(H, O)`, normally
          ``trans_model.compute_weights()`` on the network output's device.
          Only the positive term's denominators use it (see
          :class:`~torch_cctc.negative.CctcNegativeComputation`).
        supervision (CctcSupervision): supervision for all packed sequences.
        num_sequences (int): number of equal-length sequences in the
          supervision; row ``t * num_sequences + n`` of ``nnet_output`` is
          frame ``t`` of sequence ``n``.
        nnet_output (Tensor): :math:`(\text{num\_frames}, O)` log-domain
          network output.
        backend (LookupBackend, optional): Default: :class:`TorchBackend`.

    Raises:
        CctcConfigurationError: On any dimension mismatch between the inputs or
          an out-of-range label in the supervision.
    """

    def __init__(
        self,
        opts: CctcTrainingOptions,
        trans_model: CctcTransitionModel,
        cu_weights: Tensor,
        supervision: CctcSupervision,
        num_sequences: int,
        nnet_output: Tensor,
        backend: Optional[LookupBackend] = None,
    ):
        self.opts = opts
        self.trans_model = trans_model
        self.cu_weights = cu_weights
        self.supervision = supervision
        self.num_sequences = num_sequences
        self.nnet_output = nnet_output
        self.backend = backend if backend is not None else TorchBackend()
        self._check_dims()

        self.exp_nnet_output = self.backend.exp(nnet_output.detach())
        self.denominators = self.exp_nnet_output @ cu_weights.to(self.exp_nnet_output.dtype).t()

        self.positive_computation = CctcPositiveComputation(
            opts,
            trans_model,
            supervision,
            self.exp_nnet_output,
            self.denominators,
            num_sequences=num_sequences,
            backend=self.backend,
        )
        self.negative_computation = CctcNegativeComputation(
            opts, trans_model, self.exp_nnet_output, num_sequences
        )
        self._state = "constructed"

    def _check_dims(self) -> None:
        tm = self.trans_model
        validate_weights(self.cu_weights, tm.num_history_states, tm.num_output_indexes)
        validate_nnet_output(
            self.nnet_output, tm.num_output_indexes, num_rows=self.supervision.num_frames
        )
        validate_num_sequences(self.num_sequences, self.supervision.num_frames)
        validate_device_consistency(
            self.nnet_output, self.cu_weights, names=["nnet_output", "cu_weights"]
        )
        if self.supervision.label_dim > tm.num_graph_labels:
            raise CctcConfigurationError(
                f"supervision label_dim {self.supervision.label_dim} exceeds the "
                f"transition model's {tm.num_graph_labels} graph labels"
            )

    def forward(self) -> CctcForwardResult:
        """Runs both forward passes and returns the objective parts."""
        if self._state != "constructed":
            raise CctcUsageError(f"forward() called in state {self._state!r}; it may only run once")
        weight = self.supervision.weight
        positive_logprob = self.positive_computation.forward()
        negative_logprob = self.negative_computation.forward()
        self._state = "forward-done"
        return CctcForwardResult(
            positive_objf=weight * positive_logprob,
            negative_objf=-self.opts.denominator_scale * weight * negative_logprob,
            objf_denominator=weight * self.supervision.num_frames,
        )

    def backward(self, nnet_output_deriv: Tensor) -> bool:
        r"""Adds the derivative of ``positive_objf + negative_objf`` to ``nnet_output_deriv``.

        Returns:
            bool: ``True`` on success. ``False`` if non-finite values were
            detected; ``nnet_output_deriv`` is then left untouched so the caller
            can skip the minibatch.
        """
        if self._state != "forward-done":
            raise CctcUsageError(
                f"backward() called in state {self._state!r}; call forward() first, once"
            )
        validate_deriv_buffer(nnet_output_deriv, self.nnet_output)
        self._state = "backward-done"

        # -inf entries are floored in the lookups, so screen the raw output
        nan_count, inf_count = count_non_finite(self.nnet_output)
        if nan_count or inf_count:
            warnings.warn(
                f"Non-finite CCTC nnet output: {nan_count} NaN, {inf_count} Inf; "
                "derivative not applied",
                UserWarning,
                stacklevel=2,
            )
            return False

        rows = self.nnet_output.shape[0]
        device = self.nnet_output.device
        num_history_states = self.trans_model.num_history_states
        num_outputs = self.trans_model.num_output_indexes

        positive_deriv = torch.zeros(rows, num_outputs, dtype=torch.float64, device=device)
        positive_den_deriv = torch.zeros(
            rows, num_history_states, dtype=torch.float64, device=device
        )
        negative_deriv = torch.zeros_like(positive_deriv)
        negative_den_deriv = torch.zeros_like(positive_den_deriv)

        positive_ok = self.positive_computation.backward(positive_deriv, positive_den_deriv)
        negative_ok = self.negative_computation.backward(negative_deriv, negative_den_deriv)
        if not (positive_ok and negative_ok):
            return False

        weight = self.supervision.weight
        scale = self.opts.denominator_scale
        denominators_deriv = weight * (positive_den_deriv - scale * negative_den_deriv)
        deriv = weight * (positive_deriv - scale * negative_deriv)
        # chain rule through D = exp(y) W^T, then through exp(y)
        deriv += (denominators_deriv @ self.cu_weights.to(torch.float64)) * (
            self.exp_nnet_output.to(torch.float64)
        )

        nan_count, inf_count = count_non_finite(deriv)
        if nan_count or inf_count:
            warnings.warn(
                f"Non-finite CCTC derivative w.r.t. nnet output: {nan_count} NaN, "
                f"{inf_count} Inf; not applied",
                UserWarning,
                stacklevel=2,
            )
            return False

        nnet_output_deriv += deriv.to(nnet_output_deriv.dtype)
        return True

    def release(self) -> None:
        """Drops the sub-computations and intermediate buffers."""
        self.positive_computation = None
        self.negative_computation = None
        self.exp_nnet_output = None
        self.denominators = None
        self._state = "destroyed"

    def __enter__(self) -> "CctcCommonComputation":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
