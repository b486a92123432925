r"""Lookup-index construction for the positive computation.

Walks the supervision once, in arc enumeration order (state-major, then
out-arc order), and for every arc records where its numerator likelihood
lives in the exponentiated network output and where its denominator lives in
the denominator matrix. Keys are de-duplicated, so each distinct
``(row, column)`` pair is gathered once; ``fst_indexes[a]`` points from arc
``a`` into the two de-duplicated key lists.
"""

import math
from dataclasses import dataclass

import torch
from torch import Tensor

from .constants import NEG_INF
from .supervision import CctcSupervision
from .transition_model import CctcTransitionModel
from .validation import CctcConfigurationError, validate_num_sequences

__all__ = ["LookupIndexes", "compute_lookup_indexes", "frame_to_row"]


@dataclass
class LookupIndexes:
    """Per-arc lookup keys and static log-weights.

    Attributes:
        fst_indexes: ``(num_arcs, 2)``; column 0 indexes ``numerator_indexes``,
            column 1 indexes ``denominator_indexes``.
        numerator_indexes: ``(num_numerator_keys, 2)`` of ``(row, output_index)``.
        denominator_indexes: ``(num_denominator_keys, 2)`` of ``(row, history_state)``.
        arc_lm_logprobs: ``(num_arcs,)`` float64 phone-LM log-probabilities.
    """

    fst_indexes: Tensor
    numerator_indexes: Tensor
    denominator_indexes: Tensor
    arc_lm_logprobs: Tensor

    @property
    def num_arcs(self) -> int:
        return self.fst_indexes.shape[0]


def frame_to_row(frame: int, frames_per_sequence: int, num_sequences: int) -> int:
    """Maps a global frame of a packed supervision to a network-output row."""
    n, t = divmod(frame, frames_per_sequence)
    return t * num_sequences + n


def compute_lookup_indexes(
    trans_model: CctcTransitionModel,
    supervision: CctcSupervision,
    num_sequences: int = 1,
) -> LookupIndexes:
    r"""compute_lookup_indexes(trans_model, supervision, num_sequences=1) -> LookupIndexes

    Builds the lookup key table for ``supervision``.

    Args:
        trans_model (CctcTransitionModel): resolves graph labels to history
          states, output indexes and LM probabilities.
        supervision (CctcSupervision): the supervision graph.
        num_sequences (int): number of equal-length sequences packed in
          ``supervision``. Default: ``1``

    Raises:
        CctcConfigurationError: If a label doesn't resolve to a valid history
          state or output index, or ``num_frames`` doesn't split into
          ``num_sequences``.
    """
    if supervision.label_dim > trans_model.num_graph_labels:
        raise CctcConfigurationError(
            f"supervision label_dim {supervision.label_dim} exceeds the transition "
            f"model's {trans_model.num_graph_labels} graph labels"
        )
    frames_per_sequence = validate_num_sequences(num_sequences, supervision.num_frames)

    numerator_map: dict[tuple[int, int], int] = {}
    denominator_map: dict[tuple[int, int], int] = {}
    fst_indexes = []
    lm_logprobs = []

    for arc in supervision.arcs:
        frame = supervision.state_frames[arc.src]
        row = frame_to_row(frame, frames_per_sequence, num_sequences)
        history_state = trans_model.graph_label_to_history_state(arc.label)
        output_index = trans_model.graph_label_to_output_index(arc.label)
        if not 0 <= output_index < trans_model.num_output_indexes:
            raise CctcConfigurationError(f"{arc} resolves to invalid output index {output_index}")

        num_key = (row, output_index)
        den_key = (row, history_state)
        num_pos = numerator_map.setdefault(num_key, len(numerator_map))
        den_pos = denominator_map.setdefault(den_key, len(denominator_map))
        fst_indexes.append((num_pos, den_pos))

        lm_prob = trans_model.graph_label_to_lm_prob(arc.label)
        lm_logprobs.append(math.log(lm_prob) if lm_prob > 0.0 else NEG_INF)

    # dicts keep insertion order, so key position i is the i-th key inserted
    return LookupIndexes(
        fst_indexes=torch.tensor(fst_indexes, dtype=torch.long).view(-1, 2),
        numerator_indexes=torch.tensor(list(numerator_map), dtype=torch.long).view(-1, 2),
        denominator_indexes=torch.tensor(list(denominator_map), dtype=torch.long).view(-1, 2),
        arc_lm_logprobs=torch.tensor(lm_logprobs, dtype=torch.float64),
    )
