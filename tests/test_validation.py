"""Tests for input validation helpers and the error taxonomy."""

import warnings

import pytest
import torch

from torch_cctc import (
    CctcConfigurationError,
    CctcConsistencyError,
    CctcNumericalError,
    CctcUsageError,
)
from torch_cctc.validation import (
    count_non_finite,
    validate_deriv_buffer,
    validate_device_consistency,
    validate_nnet_output,
    validate_num_sequences,
    validate_weights,
)


class TestErrorTaxonomy:
    def test_base_classes(self):
        assert issubclass(CctcConfigurationError, ValueError)
        assert issubclass(CctcConsistencyError, RuntimeError)
        assert issubclass(CctcNumericalError, RuntimeError)
        assert issubclass(CctcUsageError, RuntimeError)


class TestValidateNnetOutput:
    def test_valid(self):
        validate_nnet_output(torch.zeros(4, 3), 3, num_rows=4)

    def test_not_2d(self):
        with pytest.raises(CctcConfigurationError, match="2D"):
            validate_nnet_output(torch.zeros(4, 3, 1), 3)

    def test_columns(self):
        with pytest.raises(CctcConfigurationError, match="columns"):
            validate_nnet_output(torch.zeros(4, 2), 3)

    def test_rows(self):
        with pytest.raises(CctcConfigurationError, match="rows"):
            validate_nnet_output(torch.zeros(4, 3), 3, num_rows=5)

    def test_integer_dtype_warns(self):
        with pytest.warns(UserWarning, match="floating point"):
            validate_nnet_output(torch.zeros(4, 3, dtype=torch.long), 3)

    def test_custom_name(self):
        with pytest.raises(CctcConfigurationError, match="my_output"):
            validate_nnet_output(torch.zeros(4), 3, name="my_output")


class TestValidateWeights:
    def test_valid(self):
        validate_weights(torch.ones(2, 5), 2, 5)

    def test_shape(self):
        with pytest.raises(CctcConfigurationError, match="num_history_states"):
            validate_weights(torch.ones(5, 2), 2, 5)

    def test_negative(self):
        weights = torch.ones(2, 5)
        weights[1, 3] = -0.1
        with pytest.raises(CctcConfigurationError, match="non-negative"):
            validate_weights(weights, 2, 5)


class TestValidateNumSequences:
    def test_frames_per_sequence(self):
        assert validate_num_sequences(3, 12) == 4

    def test_not_divisible(self):
        with pytest.raises(CctcConfigurationError, match="not divisible"):
            validate_num_sequences(5, 12)

    def test_non_positive(self):
        with pytest.raises(CctcConfigurationError, match="positive"):
            validate_num_sequences(0, 12)


class TestValidateDerivBuffer:
    def test_valid(self):
        validate_deriv_buffer(torch.zeros(3, 2), torch.ones(3, 2))

    def test_shape(self):
        with pytest.raises(CctcConfigurationError, match="shape"):
            validate_deriv_buffer(torch.zeros(2, 3), torch.ones(3, 2))


class TestValidateDeviceConsistency:
    def test_same_device(self):
        validate_device_consistency(torch.zeros(2), torch.zeros(3), None)

    def test_mismatch(self, skip_if_no_cuda):
        with pytest.raises(CctcConfigurationError, match="Device mismatch"):
            validate_device_consistency(
                torch.zeros(2), torch.zeros(2, device="cuda"), names=["a", "b"]
            )


class TestCountNonFinite:
    def test_counts(self):
        values = torch.tensor([1.0, float("nan"), float("inf"), -float("inf"), 0.0])
        assert count_non_finite(values) == (1, 2)

    def test_clean(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert count_non_finite(torch.zeros(4)) == (0, 0)
