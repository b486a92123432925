r"""Autograd and :class:`torch.nn.Module` wrappers for the CCTC objective.

:class:`CctcObjectiveFunction` runs one :class:`~torch_cctc.training.CctcCommonComputation`
per call, so the objective can be back-propagated with ``loss.backward()``
like any other torch loss.
"""

from typing import Optional

import torch
import torch.nn as nn
from torch import Tensor

from .options import CctcTrainingOptions
from .supervision import CctcSupervision
from .training import CctcCommonComputation
from .transition_model import CctcTransitionModel
from .validation import CctcNumericalError

__all__ = ["CctcObjectiveFunction", "cctc_objective", "CctcLoss"]


class CctcObjectiveFunction(torch.autograd.Function):
    r"""Autograd function returning ``positive_objf + negative_objf``."""

    @staticmethod
    def forward(
        ctx,
        nnet_output: Tensor,
        cu_weights: Tensor,
        opts: CctcTrainingOptions,
        trans_model: CctcTransitionModel,
        supervision: CctcSupervision,
        num_sequences: int,
    ) -> Tensor:
        computation = CctcCommonComputation(
            opts, trans_model, cu_weights, supervision, num_sequences, nnet_output.detach()
        )
        result = computation.forward()

        # non-tensor state lives on ctx; the computation borrows nnet_output
        ctx.computation = computation
        ctx.deriv = None
        ctx.save_for_backward(nnet_output)

        return torch.tensor(
            result.positive_objf + result.negative_objf,
            dtype=nnet_output.dtype,
            device=nnet_output.device,
        )

    @staticmethod
    def backward(ctx, grad_output: Tensor):
        # the computation is one-shot; keep its result for retain_graph=True reruns
        if ctx.deriv is None:
            (nnet_output,) = ctx.saved_tensors
            computation = ctx.computation
            ctx.computation = None

            deriv = torch.zeros_like(nnet_output)
            ok = computation.backward(deriv)
            computation.release()
            if not ok:
                raise CctcNumericalError(
                    "Non-finite values in CCTC backward; the derivative w.r.t. nnet_output "
                    "was not computed. Check the network output for NaN/Inf."
                )
            ctx.deriv = deriv
        return grad_output * ctx.deriv, None, None, None, None, None


def cctc_objective(
    nnet_output: Tensor,
    trans_model: CctcTransitionModel,
    supervision: CctcSupervision,
    num_sequences: int = 1,
    cu_weights: Optional[Tensor] = None,
    opts: Optional[CctcTrainingOptions] = None,
) -> Tensor:
    r"""cctc_objective(nnet_output, trans_model, supervision, num_sequences=1, cu_weights=None, opts=None) -> Tensor

    Differentiable CCTC objective (to be maximized), summed over the packed
    sequences and multiplied by the supervision weight.

    Args:
        nnet_output (Tensor): :math:`(\text{num\_frames}, O)` log-domain output.
        trans_model (CctcTransitionModel): transition model.
        supervision (CctcSupervision): supervision graph.
        num_sequences (int, optional): Default: ``1``
        cu_weights (Tensor, optional): Default: ``trans_model.compute_weights()``
          on ``nnet_output``'s device and dtype.
        opts (CctcTrainingOptions, optional): Default: ``CctcTrainingOptions()``

    Returns:
        Tensor: scalar ``positive_objf + negative_objf``.
    """
    if cu_weights is None:
        cu_weights = trans_model.compute_weights(dtype=nnet_output.dtype, device=nnet_output.device)
    if opts is None:
        opts = CctcTrainingOptions()
    return CctcObjectiveFunction.apply(
        nnet_output, cu_weights, opts, trans_model, supervision, num_sequences
    )


class CctcLoss(nn.Module):
    r"""CCTC loss: the negated per-frame objective.

    The weight matrix is a buffer, so it follows the module across ``.to()``
    calls.

    Args:
        trans_model (CctcTransitionModel): transition model.
        denominator_scale (float, optional): see
          :class:`~torch_cctc.options.CctcTrainingOptions`. Default: ``1.0``

    Examples::

        >>> loss_fn = CctcLoss(trans_model)
        >>> nnet_output = model(features)  # (num_frames, num_output_indexes)
        >>> loss = loss_fn(nnet_output, supervision, num_sequences=4)
        >>> loss.backward()
    """

    def __init__(self, trans_model: CctcTransitionModel, denominator_scale: float = 1.0):
        super().__init__()
        self.trans_model = trans_model
        self.opts = CctcTrainingOptions(denominator_scale=denominator_scale)
        self.register_buffer("weights", trans_model.compute_weights())

    def forward(
        self,
        nnet_output: Tensor,
        supervision: CctcSupervision,
        num_sequences: int = 1,
    ) -> Tensor:
        objf = cctc_objective(
            nnet_output,
            self.trans_model,
            supervision,
            num_sequences=num_sequences,
            cu_weights=self.weights,
            opts=self.opts,
        )
        return -objf / (supervision.weight * supervision.num_frames)
