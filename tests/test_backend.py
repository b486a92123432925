"""Tests for the batched lookup backends."""

import pytest
import torch

from torch_cctc import LookupBackend, TorchBackend


class TestLookupBackend:
    def test_interface_is_abstract(self):
        with pytest.raises(TypeError):
            LookupBackend()

    def test_missing_method_fails_at_construction(self):
        class GatherOnly(LookupBackend):
            def gather(self, matrix, indexes):
                return matrix[indexes[:, 0], indexes[:, 1]]

        with pytest.raises(TypeError):
            GatherOnly()


class TestTorchBackend:
    def test_gather(self):
        matrix = torch.arange(12, dtype=torch.float64).view(3, 4)
        indexes = torch.tensor([[0, 0], [2, 3], [1, 2], [2, 3]])
        values = TorchBackend().gather(matrix, indexes)
        assert values.tolist() == [0.0, 11.0, 6.0, 11.0]

    def test_scatter_add_sums_repeated_keys(self):
        matrix = torch.ones(2, 3, dtype=torch.float64)
        indexes = torch.tensor([[1, 2], [0, 0], [1, 2]])
        TorchBackend().scatter_add(matrix, indexes, torch.tensor([0.5, 2.0, 0.25]))
        expected = torch.tensor([[3.0, 1.0, 1.0], [1.0, 1.0, 1.75]], dtype=torch.float64)
        assert torch.equal(matrix, expected)

    def test_scatter_add_casts_values(self):
        matrix = torch.zeros(1, 2)
        TorchBackend().scatter_add(
            matrix, torch.tensor([[0, 1]]), torch.tensor([1.5], dtype=torch.float64)
        )
        assert matrix.dtype == torch.float32
        assert matrix.tolist() == [[0.0, 1.5]]

    def test_exp_returns_new_matrix(self):
        matrix = torch.zeros(2, 2)
        out = TorchBackend().exp(matrix)
        assert torch.equal(out, torch.ones(2, 2))
        assert torch.equal(matrix, torch.zeros(2, 2))
