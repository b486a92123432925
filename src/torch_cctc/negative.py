r"""Full-space (negative) part of the CCTC objective.

The same alpha/beta/posterior recurrences as the positive computation, run on
the implicit all-labels HMM instead of a supervision graph. Its states are
history states; each frame, every history :math:`h` may emit every phone
:math:`p` (blank included) and move to ``next_history_state[h, p]``, with
linear weight

.. math::
    \exp(y)[r, \text{output\_index}[h, p]] \cdot P_{\text{LM}}(p \mid h)

and no per-arc denominator. The total is the log of the unnormalized mass of
all label sequences starting in the initial history state, summed over the
packed sequences. For one frame it is :math:`\log D[r, h_0]`, and it is zero
when every denominator is one.

Frames are the sequential axis; sequences, history states and phones are
vectorized, so each frame is a handful of dense device ops.
"""

import warnings
from typing import Optional

import torch
from torch import Tensor

from .constants import NEG_INF
from .forward_backward import check_total_logprob, finite_total, floored_log, scatter_logsumexp
from .options import CctcTrainingOptions
from .positive import CctcComputation
from .transition_model import CctcTransitionModel
from .validation import count_non_finite, validate_num_sequences

__all__ = ["CctcNegativeComputation"]


class CctcNegativeComputation(CctcComputation):
    r"""Forward-backward over the all-labels HMM.

    Arc weights come from ``trans_model.lm_prob``, one per (history, phone)
    pair, not from the ``cu_weights`` matrix the positive computation divides
    by. That matrix sums the LM probabilities of phones sharing an output
    index and cannot be split back into per-phone arcs, so weights other
    than ``trans_model.compute_weights()`` change the positive term only.

    Args:
        opts (CctcTrainingOptions): training options.
        trans_model (CctcTransitionModel): transition model.
        exp_nnet_output (Tensor): :math:`(T \cdot N, O)`, row ``t * N + n``.
          Borrowed; must outlive this object.
        num_sequences (int): :math:`N`.
    """

    def __init__(
        self,
        opts: CctcTrainingOptions,
        trans_model: CctcTransitionModel,
        exp_nnet_output: Tensor,
        num_sequences: int,
    ):
        self.opts = opts
        self.trans_model = trans_model
        self.exp_nnet_output = exp_nnet_output
        self.num_sequences = num_sequences
        self.frames_per_sequence = validate_num_sequences(num_sequences, exp_nnet_output.shape[0])

        device = exp_nnet_output.device
        self.output_index = trans_model.output_index.to(device)
        self.next_history_state = trans_model.next_history_state.to(device)
        lm_prob = trans_model.lm_prob.to(device)
        self.lm_logprob = torch.where(
            lm_prob > 0, torch.log(lm_prob.clamp(min=1e-300)), torch.full_like(lm_prob, NEG_INF)
        )

        self.arc_logprobs: Optional[Tensor] = None
        self.log_alpha: Optional[Tensor] = None
        self.log_beta: Optional[Tensor] = None
        self.tot_log_probs: Optional[Tensor] = None

    def forward(self) -> float:
        self._begin("forward")
        T, N = self.frames_per_sequence, self.num_sequences
        H = self.trans_model.num_history_states
        P1 = self.trans_model.num_phones + 1

        # (T, N, O) -> (T, N, H, P+1) in one batched gather
        exp_output = self.exp_nnet_output.detach().view(T, N, -1)
        numerators = exp_output[:, :, self.output_index]
        self.arc_logprobs = floored_log(numerators, "full-space numerator") + self.lm_logprob

        next_flat = self.next_history_state.view(-1)
        alpha = torch.full(
            (T + 1, N, H), NEG_INF, dtype=torch.float64, device=self.exp_nnet_output.device
        )
        alpha[0, :, self.trans_model.initial_history_state] = 0.0
        for t in range(T):
            scores = alpha[t].unsqueeze(-1) + self.arc_logprobs[t]
            alpha[t + 1] = scatter_logsumexp(scores.view(N, H * P1), next_flat, H)

        self.log_alpha = alpha
        self.tot_log_probs = finite_total(torch.logsumexp(alpha[T], dim=-1))
        return self.tot_log_probs.sum().item()

    def _successor_beta(self, beta_next: Tensor) -> Tensor:
        N = beta_next.shape[0]
        return beta_next[:, self.next_history_state.view(-1)].view(
            N, *self.next_history_state.shape
        )

    def backward(self, nnet_output_deriv: Tensor, denominators_deriv: Tensor) -> bool:
        self._begin("backward")
        T, N = self.frames_per_sequence, self.num_sequences

        beta = torch.empty_like(self.log_alpha)
        beta[T] = 0.0
        for t in range(T - 1, -1, -1):
            beta[t] = torch.logsumexp(
                self.arc_logprobs[t] + self._successor_beta(beta[t + 1]), dim=-1
            )
        self.log_beta = beta

        if self.opts.check_consistency:
            h0 = self.trans_model.initial_history_state
            for n in range(N):
                check_total_logprob(
                    self.tot_log_probs[n].item(),
                    beta[0, n, h0].item(),
                    rtol=self.opts.consistency_rtol,
                )

        num_outputs = self.trans_model.num_output_indexes
        out_flat = self.output_index.view(1, -1).expand(N, -1)
        deriv = torch.zeros(T, N, num_outputs, dtype=torch.float64, device=beta.device)
        for t in range(T):
            log_post = (
                self.log_alpha[t].unsqueeze(-1)
                + self.arc_logprobs[t]
                + self._successor_beta(beta[t + 1])
                - self.tot_log_probs.view(N, 1, 1)
            )
            deriv[t].scatter_add_(1, out_flat, torch.exp(log_post).view(N, -1))

        nan_count, inf_count = count_non_finite(deriv)
        if nan_count or inf_count:
            warnings.warn(
                f"Non-finite derivatives in CCTC negative computation: "
                f"{nan_count} NaN, {inf_count} Inf",
                UserWarning,
                stacklevel=2,
            )
            return False

        nnet_output_deriv += deriv.view(T * N, num_outputs).to(nnet_output_deriv.dtype)
        # no per-arc denominators on this side, denominators_deriv is left as is
        return True
