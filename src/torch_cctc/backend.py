r"""Batched lookup capability used by the CCTC computations.

The forward-backward code never touches device matrices element by element;
it asks a backend for one batched gather, one batched scatter-add and one
elementwise exponential. :class:`TorchBackend` maps each of these to a single
vectorized torch op on whatever device the matrix lives on, so the number of
device round-trips does not depend on the number of arcs.

Index lists are ``(n, 2)`` long tensors of ``(row, column)`` pairs.
"""

from abc import ABC, abstractmethod

from torch import Tensor

__all__ = ["LookupBackend", "TorchBackend"]


class LookupBackend(ABC):
    """Interface for batched gather / scatter-add / exp on a 2D matrix."""

    @abstractmethod
    def gather(self, matrix: Tensor, indexes: Tensor) -> Tensor:
        """Returns ``matrix[indexes[i, 0], indexes[i, 1]]`` for every ``i``."""
        raise NotImplementedError

    @abstractmethod
    def scatter_add(self, matrix: Tensor, indexes: Tensor, values: Tensor) -> None:
        """Adds ``values[i]`` to ``matrix[indexes[i, 0], indexes[i, 1]]`` in place."""
        raise NotImplementedError

    @abstractmethod
    def exp(self, matrix: Tensor) -> Tensor:
        """Elementwise exponential into a new matrix."""
        raise NotImplementedError


class TorchBackend(LookupBackend):
    r"""Backend built on torch advanced indexing.

    ``gather`` flattens ``(row, col)`` to ``row * num_cols + col`` and does a
    single flat index; ``scatter_add`` uses ``index_put_`` with
    ``accumulate=True`` so repeated keys are summed.
    """

    def gather(self, matrix: Tensor, indexes: Tensor) -> Tensor:
        indexes = indexes.to(matrix.device)
        flat = indexes[:, 0] * matrix.shape[1] + indexes[:, 1]
        return matrix.reshape(-1)[flat]

    def scatter_add(self, matrix: Tensor, indexes: Tensor, values: Tensor) -> None:
        indexes = indexes.to(matrix.device)
        matrix.index_put_(
            (indexes[:, 0], indexes[:, 1]),
            values.to(device=matrix.device, dtype=matrix.dtype),
            accumulate=True,
        )

    def exp(self, matrix: Tensor) -> Tensor:
        return matrix.exp()
