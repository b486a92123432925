r"""Forward-backward recurrences over a supervision graph.

All state is float64 on the host, whatever the precision of the network
output the arc log-probabilities came from.

Forward (α):
    α[start] = 0
    α[v] = logsumexp over arcs (u → v) of α[u] + logprob(u → v)

Backward (β):
    β[f] = 0 for every final state f
    β[v] = logsumexp over arcs (v → w) of logprob(v → w) + β[w]

Arc posterior (occupation probability):
    γ(u → v) = exp(α[u] + logprob(u → v) + β[v] - log Z)

Every arc consumes one frame, so the sweep goes frame by frame: all arcs
leaving frame t are combined in one vectorized step, which is a valid
topological order. Within a frame arcs keep their enumeration order.
"""

import math
import warnings

import torch
from torch import Tensor

from .constants import CONSISTENCY_ATOL, CONSISTENCY_RTOL, LOG_PROB_FLOOR, NEG_INF, PROB_FLOOR
from .supervision import CctcSupervision
from .validation import CctcConsistencyError

__all__ = [
    "GraphTopology",
    "compute_alpha",
    "compute_beta",
    "arc_posteriors",
    "check_total_logprob",
    "scatter_logsumexp",
    "floored_log",
    "finite_total",
]


class GraphTopology:
    """Arc endpoints of a supervision grouped by frame, as long tensors."""

    def __init__(self, supervision: CctcSupervision):
        src, dst, arc_frames = supervision.arc_tensors()
        self.num_states = supervision.num_states
        self.num_frames = supervision.num_frames
        self.start_state = supervision.start_state
        self.final_states = torch.tensor(supervision.final_states, dtype=torch.long)
        self.src = src
        self.dst = dst
        order = torch.argsort(arc_frames, stable=True)
        counts = torch.bincount(arc_frames, minlength=self.num_frames).tolist()
        self.frame_arcs = list(torch.split(order, counts))


def scatter_logsumexp(values: Tensor, index: Tensor, size: int) -> Tensor:
    """Log-domain scatter-add along the last dim: ``out[..., i] = logsumexp(values[..., index == i])``.

    Empty targets get :data:`NEG_INF`.
    """
    out_shape = values.shape[:-1] + (size,)
    index = index.expand_as(values)
    out_max = torch.full(out_shape, NEG_INF, dtype=values.dtype, device=values.device)
    out_max = out_max.scatter_reduce(-1, index, values, reduce="amax", include_self=True)
    shifted = torch.exp(values - out_max.gather(-1, index))
    sums = torch.zeros(out_shape, dtype=values.dtype, device=values.device)
    sums = sums.scatter_add_(-1, index, shifted)
    return torch.where(sums > 0, out_max + torch.log(sums.clamp(min=1e-300)), out_max)


def finite_total(tot_log_prob: Tensor) -> Tensor:
    """Maps totals that only reach :data:`NEG_INF` (no path of non-zero probability) to ``-inf``."""
    return torch.where(
        tot_log_prob <= NEG_INF / 2, torch.full_like(tot_log_prob, -math.inf), tot_log_prob
    )


def floored_log(probs: Tensor, name: str) -> Tensor:
    """float64 log of linear-domain ``probs``, clamped below at :data:`PROB_FLOOR`."""
    probs = probs.to(torch.float64)
    floored = probs < PROB_FLOOR
    if floored.any():
        warnings.warn(
            f"{int(floored.sum().item())} {name} values underflowed; clamping to "
            f"log-prob {LOG_PROB_FLOOR:.2f}",
            UserWarning,
            stacklevel=3,
        )
        probs = probs.clamp(min=PROB_FLOOR)
    return torch.log(probs)


def compute_alpha(topology: GraphTopology, arc_logprobs: Tensor) -> tuple[Tensor, float]:
    r"""compute_alpha(topology, arc_logprobs) -> (Tensor, float)

    Forward sweep.

    Args:
        topology (GraphTopology): the supervision graph.
        arc_logprobs (Tensor): ``(num_arcs,)`` arc log-probabilities.

    Returns:
        alpha: ``(num_states,)`` float64, :data:`NEG_INF` for unreachable states.
        tot_log_prob: logsumexp of alpha over the final states; ``-inf`` when
          every path has zero probability.
    """
    arc_logprobs = arc_logprobs.to(torch.float64)
    alpha = torch.full((topology.num_states,), NEG_INF, dtype=torch.float64)
    alpha[topology.start_state] = 0.0

    for arcs in topology.frame_arcs:
        if arcs.numel() == 0:
            continue
        src = topology.src[arcs]
        dst = topology.dst[arcs]
        scores = alpha[src] + arc_logprobs[arcs]
        incoming = scatter_logsumexp(scores, dst, topology.num_states)
        targets = torch.unique(dst)
        alpha[targets] = incoming[targets]

    tot_log_prob = finite_total(torch.logsumexp(alpha[topology.final_states], dim=0)).item()
    return alpha, tot_log_prob


def compute_beta(topology: GraphTopology, arc_logprobs: Tensor) -> tuple[Tensor, float]:
    r"""compute_beta(topology, arc_logprobs) -> (Tensor, float)

    Backward sweep, in reverse frame order.

    Returns:
        beta: ``(num_states,)`` float64.
        tot_log_prob: ``beta[start]``, which must match the forward total.
    """
    arc_logprobs = arc_logprobs.to(torch.float64)
    beta = torch.full((topology.num_states,), NEG_INF, dtype=torch.float64)
    beta[topology.final_states] = 0.0

    for arcs in reversed(topology.frame_arcs):
        if arcs.numel() == 0:
            continue
        src = topology.src[arcs]
        dst = topology.dst[arcs]
        scores = arc_logprobs[arcs] + beta[dst]
        outgoing = scatter_logsumexp(scores, src, topology.num_states)
        sources = torch.unique(src)
        beta[sources] = outgoing[sources]

    return beta, finite_total(beta[topology.start_state]).item()


def arc_posteriors(
    topology: GraphTopology,
    arc_logprobs: Tensor,
    alpha: Tensor,
    beta: Tensor,
    tot_log_prob: float,
) -> Tensor:
    """Occupation probability of every arc, float64, in arc enumeration order."""
    log_post = alpha[topology.src] + arc_logprobs.to(torch.float64) + beta[topology.dst]
    return torch.exp(log_post - tot_log_prob)


def check_total_logprob(
    forward_total: float,
    backward_total: float,
    rtol: float = CONSISTENCY_RTOL,
    atol: float = CONSISTENCY_ATOL,
) -> None:
    """Raises :class:`CctcConsistencyError` if the two totals disagree.

    Non-finite totals are not compared; they are reported by the derivative
    check instead.
    """
    if not (torch.isfinite(torch.tensor([forward_total, backward_total])).all()):
        return
    if abs(forward_total - backward_total) > atol + rtol * abs(forward_total):
        raise CctcConsistencyError(
            f"Total log-prob mismatch between forward ({forward_total:.10g}) and "
            f"backward ({backward_total:.10g}) passes"
        )
