r"""Supervision graphs for CCTC training.

A supervision is an acyclic weighted graph whose paths are the admissible
alignments of one training segment. Arcs carry graph labels (see
:mod:`torch_cctc.transition_model`); every arc consumes exactly one frame, so
each state sits at a well-defined frame and all paths from the start state to
a final state have length ``num_frames``.

Several equal-length sequences are packed by serial concatenation
(:func:`append_supervisions`); the ``num_sequences`` passed to the
computation then says how the global frame index maps to network-output rows.
"""

from typing import NamedTuple, Optional, Sequence

import torch
from torch import Tensor

from .validation import CctcConfigurationError

__all__ = ["Arc", "CctcSupervision", "append_supervisions"]


class Arc(NamedTuple):
    """An arc ``src -> dst`` carrying graph label ``label``."""

    src: int
    dst: int
    label: int


class CctcSupervision:
    r"""Supervision graph for one (possibly packed) training segment.

    States must be numbered topologically (every arc goes from a lower- to a
    higher-numbered state). Arcs are stored state-major, keeping the given
    order among the out-arcs of a state; this is the arc enumeration order used
    everywhere downstream.

    Args:
        num_states (int): number of states.
        arcs (sequence of Arc or tuple): ``(src, dst, label)`` triples.
        label_dim (int): largest allowed graph label (labels are in
          :math:`[1, \text{label\_dim}]`).
        start_state (int, optional): Default: ``0``
        final_states (sequence of int, optional): Default: the last state.
        weight (float, optional): supervision weight. Default: ``1.0``
        num_frames (int, optional): expected number of frames; checked against
          the frame of the final states when given.

    Raises:
        CctcConfigurationError: If the graph is not topologically numbered, a
          state is unreachable, an arc skips or repeats a frame, final states
          sit at different frames, or a label is out of range.
    """

    def __init__(
        self,
        num_states: int,
        arcs: Sequence,
        label_dim: int,
        start_state: int = 0,
        final_states: Optional[Sequence[int]] = None,
        weight: float = 1.0,
        num_frames: Optional[int] = None,
    ):
        if num_states < 2:
            raise CctcConfigurationError(f"supervision needs at least 2 states, got {num_states}")
        if not 0 <= start_state < num_states:
            raise CctcConfigurationError(f"start_state {start_state} out of range")
        if final_states is None:
            final_states = [num_states - 1]
        final_states = sorted(set(int(s) for s in final_states))
        if not final_states or not all(0 <= s < num_states for s in final_states):
            raise CctcConfigurationError(f"final_states {final_states} out of range")

        arcs = [Arc(int(a[0]), int(a[1]), int(a[2])) for a in arcs]
        for arc in arcs:
            if not (0 <= arc.src < num_states and 0 <= arc.dst < num_states):
                raise CctcConfigurationError(f"{arc} references a state outside [0, {num_states})")
            if arc.src >= arc.dst:
                raise CctcConfigurationError(
                    f"{arc} is not topologically ordered (src must be < dst)"
                )
            if not 1 <= arc.label <= label_dim:
                raise CctcConfigurationError(
                    f"{arc} has label outside [1, {label_dim}]"
                )
        # stable: keeps out-arc order within a state
        arcs.sort(key=lambda a: a.src)

        state_frames = self._compute_state_frames(num_states, start_state, arcs)

        final_frames = {state_frames[s] for s in final_states}
        if len(final_frames) != 1:
            raise CctcConfigurationError(
                f"final states sit at different frames: {sorted(final_frames)}"
            )
        final_frame = final_frames.pop()
        if num_frames is not None and num_frames != final_frame:
            raise CctcConfigurationError(
                f"num_frames={num_frames} but final states are at frame {final_frame}"
            )
        if final_frame == 0:
            raise CctcConfigurationError("supervision must cover at least one frame")

        self.num_states = num_states
        self.arcs = arcs
        self.label_dim = label_dim
        self.start_state = start_state
        self.final_states = final_states
        self.weight = float(weight)
        self.num_frames = final_frame
        self.state_frames = state_frames

    @staticmethod
    def _compute_state_frames(num_states, start_state, arcs) -> list[int]:
        frames = [-1] * num_states
        frames[start_state] = 0
        for arc in arcs:
            if frames[arc.src] < 0:
                raise CctcConfigurationError(
                    f"state {arc.src} is not reachable from start state {start_state}"
                )
            if frames[arc.dst] < 0:
                frames[arc.dst] = frames[arc.src] + 1
            elif frames[arc.dst] != frames[arc.src] + 1:
                raise CctcConfigurationError(
                    f"{arc} connects frame {frames[arc.src]} to a state at frame "
                    f"{frames[arc.dst]}"
                )
        unreachable = [s for s, f in enumerate(frames) if f < 0]
        if unreachable:
            raise CctcConfigurationError(f"states {unreachable} are not reachable from the start")
        return frames

    @property
    def num_arcs(self) -> int:
        return len(self.arcs)

    def arc_tensors(self) -> tuple[Tensor, Tensor, Tensor]:
        """Returns ``(src, dst, frame)`` long tensors in arc enumeration order."""
        src = torch.tensor([a.src for a in self.arcs], dtype=torch.long)
        dst = torch.tensor([a.dst for a in self.arcs], dtype=torch.long)
        frames = torch.tensor(self.state_frames, dtype=torch.long)
        return src, dst, frames[src]

    def __repr__(self) -> str:
        return (
            f"CctcSupervision(num_states={self.num_states}, num_arcs={self.num_arcs}, "
            f"num_frames={self.num_frames}, weight={self.weight})"
        )


def append_supervisions(supervisions: Sequence[CctcSupervision]) -> CctcSupervision:
    r"""Packs equal-length supervisions into one by serial concatenation.

    The single final state of each supervision is merged with the start state
    of the next. Pass ``num_sequences=len(supervisions)`` to the computation.

    Raises:
        CctcConfigurationError: If the list is empty, or the supervisions differ
          in ``num_frames``, ``weight`` or ``label_dim``, or one that is not
          the last has more than one final state.
    """
    if not supervisions:
        raise CctcConfigurationError("cannot append an empty list of supervisions")
    first = supervisions[0]
    for sup in supervisions[1:]:
        if (sup.num_frames, sup.weight, sup.label_dim) != (
            first.num_frames,
            first.weight,
            first.label_dim,
        ):
            raise CctcConfigurationError(
                "supervisions to append must agree in num_frames, weight and label_dim"
            )
    if len(supervisions) == 1:
        return first

    arcs: list[Arc] = []
    num_states = 0
    join_state = None
    final_states: list[int] = []
    for i, sup in enumerate(supervisions):
        is_last = i == len(supervisions) - 1
        if not is_last and len(sup.final_states) != 1:
            raise CctcConfigurationError(
                f"supervision {i} has {len(sup.final_states)} final states, "
                "only the last may have more than one"
            )
        mapping = {}
        for s in range(sup.num_states):
            if s == sup.start_state and join_state is not None:
                mapping[s] = join_state
            else:
                mapping[s] = num_states
                num_states += 1
        arcs.extend(Arc(mapping[a.src], mapping[a.dst], a.label) for a in sup.arcs)
        if is_last:
            final_states = [mapping[s] for s in sup.final_states]
        else:
            join_state = mapping[sup.final_states[0]]

    return CctcSupervision(
        num_states,
        arcs,
        label_dim=first.label_dim,
        start_state=0,
        final_states=final_states,
        weight=first.weight,
        num_frames=first.num_frames * len(supervisions),
    )
