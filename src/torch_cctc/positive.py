r"""Graph-constrained (positive) part of the CCTC objective.

For every arc :math:`a` of the supervision, with numerator key
:math:`(r, o)` and denominator key :math:`(r, h)`:

.. math::
    \log p(a) = \log \exp(y)[r, o] + \log P_{\text{LM}}(a) - \log D[r, h]

where :math:`D = \exp(y) W^\top` are the denominators. The positive
log-probability is the forward total of the supervision under these arc
probabilities. Its derivatives are the arc posteriors: :math:`+\gamma(a)`
w.r.t. :math:`y[r, o]` and :math:`-\gamma(a) / D[r, h]` w.r.t.
:math:`D[r, h]`.
"""

import warnings
from abc import ABC, abstractmethod
from typing import Optional

import torch
from torch import Tensor

from .backend import LookupBackend, TorchBackend
from .constants import PROB_FLOOR
from .forward_backward import (
    GraphTopology,
    arc_posteriors,
    check_total_logprob,
    compute_alpha,
    compute_beta,
    floored_log,
)
from .indexes import compute_lookup_indexes
from .options import CctcTrainingOptions
from .supervision import CctcSupervision
from .transition_model import CctcTransitionModel
from .validation import CctcUsageError, count_non_finite

__all__ = ["CctcComputation", "CctcPositiveComputation", "ReadThenAccumulateBuffer"]


class CctcComputation(ABC):
    r"""Interface shared by the positive and negative computations.

    Both are one-shot: :meth:`forward` once, then :meth:`backward` once.
    """

    @abstractmethod
    def forward(self) -> float:
        """Returns the total log-probability."""
        raise NotImplementedError

    @abstractmethod
    def backward(self, nnet_output_deriv: Tensor, denominators_deriv: Tensor) -> bool:
        r"""Adds derivatives of the total log-probability to the two buffers.

        ``nnet_output_deriv`` receives the derivative w.r.t. the (log-domain)
        network output through the numerators only; ``denominators_deriv``
        receives the derivative w.r.t. the linear-domain denominators.

        Returns:
            bool: ``False`` if non-finite derivatives were found, in which case
            neither buffer is modified.
        """
        raise NotImplementedError

    def _begin(self, stage: str) -> None:
        done = getattr(self, "_stages_done", set())
        if stage == "forward" and "forward" in done:
            raise CctcUsageError(f"{type(self).__name__}.forward() may only be called once")
        if stage == "backward":
            if "forward" not in done:
                raise CctcUsageError(
                    f"{type(self).__name__}.backward() called before forward()"
                )
            if "backward" in done:
                raise CctcUsageError(f"{type(self).__name__}.backward() may only be called once")
        done.add(stage)
        self._stages_done = done


class ReadThenAccumulateBuffer:
    r"""Storage holding looked-up values, later reused for their derivatives.

    While in the *read* role, :attr:`values` gives the looked-up values. The
    one-way :meth:`to_derivative` switch overwrites the same storage with
    :math:`\partial F / \partial x = (\partial F / \partial \log x) / x`;
    after that, reading :attr:`values` is an error.
    """

    def __init__(self, values: Tensor):
        self._data = values
        self._is_derivative = False

    @property
    def values(self) -> Tensor:
        if self._is_derivative:
            raise CctcUsageError("buffer already holds derivatives; values are gone")
        return self._data

    def to_derivative(self, log_deriv: Tensor) -> Tensor:
        if self._is_derivative:
            raise CctcUsageError("buffer already holds derivatives")
        self._is_derivative = True
        self._data.reciprocal_().mul_(log_deriv.to(self._data.dtype))
        return self._data


class CctcPositiveComputation(CctcComputation):
    r"""Forward-backward over the supervision graph.

    The supervision weight is not applied here; the caller scales.

    Args:
        opts (CctcTrainingOptions): training options.
        trans_model (CctcTransitionModel): transition model.
        supervision (CctcSupervision): supervision graph.
        exp_nnet_output (Tensor): exponentiated network output,
          :math:`(\text{rows}, O)`. Borrowed; must outlive this object.
        denominators (Tensor): :math:`(\text{rows}, H)`. Borrowed.
        num_sequences (int, optional): sequences packed in ``supervision``.
          Default: ``1``
        backend (LookupBackend, optional): Default: :class:`TorchBackend`.

    Raises:
        CctcConfigurationError: If a supervision arc doesn't resolve within
          the transition model's ranges.
    """

    def __init__(
        self,
        opts: CctcTrainingOptions,
        trans_model: CctcTransitionModel,
        supervision: CctcSupervision,
        exp_nnet_output: Tensor,
        denominators: Tensor,
        num_sequences: int = 1,
        backend: Optional[LookupBackend] = None,
    ):
        self.opts = opts
        self.trans_model = trans_model
        self.supervision = supervision
        self.exp_nnet_output = exp_nnet_output
        self.denominators = denominators
        self.backend = backend if backend is not None else TorchBackend()

        self.indexes = compute_lookup_indexes(trans_model, supervision, num_sequences)
        self.topology = GraphTopology(supervision)

        self.numerator_probs: Optional[Tensor] = None
        self.numerator_floored: Optional[Tensor] = None
        self.denominator_floored: Optional[Tensor] = None
        self.denominator_probs: Optional[ReadThenAccumulateBuffer] = None
        self.arc_logprobs: Optional[Tensor] = None
        self.log_alpha: Optional[Tensor] = None
        self.log_beta: Optional[Tensor] = None
        self.tot_log_prob: Optional[float] = None

    def forward(self) -> float:
        self._begin("forward")
        self._look_up_likelihoods()
        self.log_alpha, self.tot_log_prob = compute_alpha(self.topology, self.arc_logprobs)
        return self.tot_log_prob

    def _look_up_likelihoods(self) -> None:
        idx = self.indexes
        numerators = self.backend.gather(self.exp_nnet_output, idx.numerator_indexes)
        denominators = self.backend.gather(self.denominators, idx.denominator_indexes)
        # host, float64 from here on
        self.numerator_probs = numerators.detach().to("cpu", torch.float64)
        self.denominator_probs = ReadThenAccumulateBuffer(
            denominators.detach().to("cpu", torch.float64)
        )

        # clamped entries are constant in the objective, so their derivative is zero
        self.numerator_floored = self.numerator_probs < PROB_FLOOR
        self.denominator_floored = self.denominator_probs.values < PROB_FLOOR
        log_num = floored_log(self.numerator_probs, "numerator")
        log_den = floored_log(self.denominator_probs.values, "denominator")
        # the derivative divides by the same floored value the log used
        self.denominator_probs.values.clamp_(min=PROB_FLOOR)

        self.arc_logprobs = (
            log_num[idx.fst_indexes[:, 0]]
            + idx.arc_lm_logprobs
            - log_den[idx.fst_indexes[:, 1]]
        )

    def backward(self, nnet_output_deriv: Tensor, denominators_deriv: Tensor) -> bool:
        self._begin("backward")
        self.log_beta, beta_tot = compute_beta(self.topology, self.arc_logprobs)
        if self.opts.check_consistency:
            check_total_logprob(self.tot_log_prob, beta_tot, rtol=self.opts.consistency_rtol)

        posteriors = arc_posteriors(
            self.topology, self.arc_logprobs, self.log_alpha, self.log_beta, self.tot_log_prob
        )
        idx = self.indexes
        numerator_deriv = torch.zeros_like(self.numerator_probs).index_add_(
            0, idx.fst_indexes[:, 0], posteriors
        )
        log_denominator_deriv = torch.zeros(
            idx.denominator_indexes.shape[0], dtype=torch.float64
        ).index_add_(0, idx.fst_indexes[:, 1], -posteriors)
        numerator_deriv.masked_fill_(self.numerator_floored, 0.0)
        log_denominator_deriv.masked_fill_(self.denominator_floored, 0.0)
        denominator_deriv = self.denominator_probs.to_derivative(log_denominator_deriv)

        num_bad = count_non_finite(numerator_deriv)
        den_bad = count_non_finite(denominator_deriv)
        if any(num_bad) or any(den_bad):
            warnings.warn(
                f"Non-finite derivatives in CCTC positive computation: numerator "
                f"{num_bad[0]} NaN, {num_bad[1]} Inf; denominator {den_bad[0]} NaN, "
                f"{den_bad[1]} Inf",
                UserWarning,
                stacklevel=2,
            )
            return False

        self.backend.scatter_add(nnet_output_deriv, idx.numerator_indexes, numerator_deriv)
        self.backend.scatter_add(denominators_deriv, idx.denominator_indexes, denominator_deriv)
        return True
