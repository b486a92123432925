r"""Context-dependent transition model for CCTC.

The transition model says, for every history state :math:`h` (a truncated
phone history) and every phone :math:`p \in \{0, \ldots, P\}` (phone 0 is
blank), which network output index scores the pair, what the
phone-language-model probability of :math:`p` given :math:`h` is, and which
history state follows.

Supervision arcs carry *graph labels*, which encode a (history, phone) pair:

.. math::
    \text{label} = h \cdot (P + 1) + p + 1

Label 0 is reserved (epsilon).
"""

from typing import Optional

import torch
from torch import Tensor

from .validation import CctcConfigurationError

__all__ = ["CctcTransitionModel"]


class CctcTransitionModel:
    r"""Lookup tables of a CCTC transition model.

    Args:
        next_history_state (Tensor): long tensor of shape :math:`(H, P+1)`.
        output_index (Tensor): long tensor of shape :math:`(H, P+1)`, values in
          :math:`[0, O)`.
        lm_prob (Tensor): tensor of shape :math:`(H, P+1)` with the phone
          language-model probability of each phone given each history.
        num_output_indexes (int, optional): :math:`O`. Default: one more than
          the largest entry of ``output_index``.
        initial_history_state (int, optional): history state at the start of
          every sequence. Default: ``0``

    Raises:
        CctcConfigurationError: If the tables disagree in shape or an entry is
          out of range.
    """

    def __init__(
        self,
        next_history_state: Tensor,
        output_index: Tensor,
        lm_prob: Tensor,
        num_output_indexes: Optional[int] = None,
        initial_history_state: int = 0,
    ):
        next_history_state = torch.as_tensor(next_history_state, dtype=torch.long)
        output_index = torch.as_tensor(output_index, dtype=torch.long)
        lm_prob = torch.as_tensor(lm_prob, dtype=torch.float64)

        if next_history_state.ndim != 2:
            raise CctcConfigurationError(
                f"next_history_state must be 2D (H, P+1), got {next_history_state.ndim}D"
            )
        shape = next_history_state.shape
        if output_index.shape != shape or lm_prob.shape != shape:
            raise CctcConfigurationError(
                f"transition tables disagree in shape: next_history_state {tuple(shape)}, "
                f"output_index {tuple(output_index.shape)}, lm_prob {tuple(lm_prob.shape)}"
            )

        num_history_states, num_phones_plus_one = shape
        if num_history_states == 0 or num_phones_plus_one == 0:
            raise CctcConfigurationError("transition tables must be non-empty")

        if num_output_indexes is None:
            num_output_indexes = int(output_index.max().item()) + 1

        if output_index.min() < 0 or output_index.max() >= num_output_indexes:
            raise CctcConfigurationError(
                f"output_index must be in [0, {num_output_indexes}), got range "
                f"[{output_index.min().item()}, {output_index.max().item()}]"
            )
        if next_history_state.min() < 0 or next_history_state.max() >= num_history_states:
            raise CctcConfigurationError(
                f"next_history_state must be in [0, {num_history_states}), got range "
                f"[{next_history_state.min().item()}, {next_history_state.max().item()}]"
            )
        if (lm_prob < 0).any() or not torch.isfinite(lm_prob).all():
            raise CctcConfigurationError("lm_prob must be finite and non-negative")
        if not 0 <= initial_history_state < num_history_states:
            raise CctcConfigurationError(
                f"initial_history_state must be in [0, {num_history_states}), "
                f"got {initial_history_state}"
            )

        self.next_history_state = next_history_state
        self.output_index = output_index
        self.lm_prob = lm_prob
        self.num_phones = num_phones_plus_one - 1
        self.num_history_states = num_history_states
        self.num_output_indexes = num_output_indexes
        self.initial_history_state = initial_history_state

    @classmethod
    def from_bigram(cls, bigram: Tensor, blank_prob: float = 0.5) -> "CctcTransitionModel":
        r"""Builds a model from a phone bigram.

        History state :math:`h` is the previous phone (0 at the sequence start).
        Blank keeps the history; phone :math:`p` moves to history :math:`p`.
        Phone :math:`p` uses output index :math:`p` and blank after history
        :math:`h` uses output index :math:`P + 1 + h`, so blanks are
        context-dependent.

        Args:
            bigram (Tensor): shape :math:`(P+1, P)`; row :math:`h` is the
              distribution over the next real phone given history :math:`h`.
              Rows are renormalized.
            blank_prob (float): probability mass given to blank from every
              history. Default: ``0.5``
        """
        bigram = torch.as_tensor(bigram, dtype=torch.float64)
        if bigram.ndim != 2 or bigram.shape[0] != bigram.shape[1] + 1:
            raise CctcConfigurationError(
                f"bigram must have shape (P+1, P), got {tuple(bigram.shape)}"
            )
        if not 0.0 < blank_prob < 1.0:
            raise CctcConfigurationError(f"blank_prob must be in (0, 1), got {blank_prob}")

        num_phones = bigram.shape[1]
        num_history_states = num_phones + 1
        bigram = bigram / bigram.sum(dim=1, keepdim=True)

        histories = torch.arange(num_history_states).unsqueeze(1)
        phones = torch.arange(num_phones + 1).unsqueeze(0)

        next_history_state = torch.where(phones == 0, histories, phones)
        output_index = torch.where(phones == 0, num_phones + 1 + histories, phones)
        lm_prob = torch.cat(
            [torch.full((num_history_states, 1), blank_prob, dtype=torch.float64),
             (1.0 - blank_prob) * bigram],
            dim=1,
        )
        return cls(
            next_history_state,
            output_index,
            lm_prob,
            num_output_indexes=2 * num_phones + 2,
        )

    @property
    def num_graph_labels(self) -> int:
        return self.num_history_states * (self.num_phones + 1)

    def graph_label(self, history_state: int, phone: int) -> int:
        """Encodes a (history state, phone) pair as a graph label."""
        return history_state * (self.num_phones + 1) + phone + 1

    def _decode(self, graph_label: int) -> tuple[int, int]:
        if not 1 <= graph_label <= self.num_graph_labels:
            raise CctcConfigurationError(
                f"graph label {graph_label} out of range [1, {self.num_graph_labels}]"
            )
        return divmod(graph_label - 1, self.num_phones + 1)

    def graph_label_to_history_state(self, graph_label: int) -> int:
        return self._decode(graph_label)[0]

    def graph_label_to_phone(self, graph_label: int) -> int:
        return self._decode(graph_label)[1]

    def graph_label_to_output_index(self, graph_label: int) -> int:
        h, p = self._decode(graph_label)
        return int(self.output_index[h, p])

    def graph_label_to_lm_prob(self, graph_label: int) -> float:
        h, p = self._decode(graph_label)
        return float(self.lm_prob[h, p])

    def graph_label_to_next_history_state(self, graph_label: int) -> int:
        h, p = self._decode(graph_label)
        return int(self.next_history_state[h, p])

    def compute_weights(
        self,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> Tensor:
        r"""compute_weights(dtype=torch.float32, device=None) -> Tensor

        Dense weight matrix used to derive the denominators.

        .. math::
            W[h, o] = \sum_{p : \text{output\_index}[h, p] = o} \text{lm\_prob}[h, p]

        Returns:
            Tensor: shape :math:`(H, O)`.
        """
        weights = torch.zeros(self.num_history_states, self.num_output_indexes, dtype=torch.float64)
        weights.scatter_add_(1, self.output_index, self.lm_prob)
        return weights.to(dtype=dtype, device=device)

    def __repr__(self) -> str:
        return (
            f"CctcTransitionModel(num_phones={self.num_phones}, "
            f"num_history_states={self.num_history_states}, "
            f"num_output_indexes={self.num_output_indexes})"
        )
