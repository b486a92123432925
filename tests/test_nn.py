"""Tests for the autograd function and the CctcLoss module."""

import warnings

import pytest
import torch

from torch_cctc import (
    CctcCommonComputation,
    CctcLoss,
    CctcNumericalError,
    CctcTrainingOptions,
    cctc_objective,
)


@pytest.fixture
def case(bigram_model, ctc_supervision, random_nnet_output):
    sup = ctc_supervision(bigram_model, [3, 1], 5, weight=1.5)
    nnet_output = random_nnet_output(5, bigram_model.num_output_indexes, seed=17)
    return bigram_model, sup, nnet_output


class TestCctcObjective:
    def test_value_matches_computation(self, case):
        trans_model, sup, nnet_output = case
        weights = trans_model.compute_weights(dtype=torch.float64)
        result = CctcCommonComputation(
            CctcTrainingOptions(), trans_model, weights, sup, 1, nnet_output
        ).forward()
        objf = cctc_objective(nnet_output, trans_model, sup)
        assert objf.item() == pytest.approx(result.positive_objf + result.negative_objf)
        assert objf.dtype == torch.float64

    def test_gradient_matches_backward(self, case):
        trans_model, sup, nnet_output = case
        weights = trans_model.compute_weights(dtype=torch.float64)
        computation = CctcCommonComputation(
            CctcTrainingOptions(), trans_model, weights, sup, 1, nnet_output
        )
        computation.forward()
        expected = torch.zeros_like(nnet_output)
        assert computation.backward(expected)

        y = nnet_output.clone().requires_grad_(True)
        cctc_objective(y, trans_model, sup).backward()
        torch.testing.assert_close(y.grad, expected)

    def test_grad_output_scales(self, case):
        trans_model, sup, nnet_output = case
        y = nnet_output.clone().requires_grad_(True)
        (3.0 * cctc_objective(y, trans_model, sup)).backward()

        y_ref = nnet_output.clone().requires_grad_(True)
        cctc_objective(y_ref, trans_model, sup).backward()
        torch.testing.assert_close(y.grad, 3.0 * y_ref.grad)

    def test_gradcheck(self, shared_output_model):
        from torch_cctc import CctcSupervision

        sup = CctcSupervision(3, [(0, 1, 2), (0, 1, 1), (1, 2, 5)], label_dim=6)
        y = torch.randn(2, 4, dtype=torch.float64, requires_grad=True)
        opts = CctcTrainingOptions(denominator_scale=0.8)
        assert torch.autograd.gradcheck(
            lambda x: cctc_objective(x, shared_output_model, sup, opts=opts), (y,)
        )

    def test_gradient_flows_to_upstream_parameters(self, case):
        trans_model, sup, _ = case
        torch.manual_seed(0)
        layer = torch.nn.Linear(6, trans_model.num_output_indexes).double()
        features = torch.randn(5, 6, dtype=torch.float64)
        cctc_objective(layer(features), trans_model, sup).backward()
        assert layer.weight.grad is not None
        assert torch.isfinite(layer.weight.grad).all()

    def test_nan_raises(self, case):
        trans_model, sup, nnet_output = case
        y = nnet_output.clone()
        y[2, :] = float("nan")
        y.requires_grad_(True)
        objf = cctc_objective(y, trans_model, sup)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            with pytest.raises(CctcNumericalError):
                objf.backward()


class TestCctcLoss:
    def test_loss_is_negated_per_frame_objective(self, case):
        trans_model, sup, nnet_output = case
        loss = CctcLoss(trans_model, denominator_scale=0.9)(nnet_output, sup)
        objf = cctc_objective(
            nnet_output, trans_model, sup, opts=CctcTrainingOptions(denominator_scale=0.9)
        )
        assert loss.item() == pytest.approx(-objf.item() / (1.5 * 5))

    def test_weights_buffer(self, bigram_model):
        loss_fn = CctcLoss(bigram_model)
        assert "weights" in dict(loss_fn.named_buffers())
        torch.testing.assert_close(loss_fn.weights, bigram_model.compute_weights())
        assert list(loss_fn.parameters()) == []

    def test_backward(self, case):
        trans_model, sup, nnet_output = case
        loss_fn = CctcLoss(trans_model).double()
        y = nnet_output.clone().requires_grad_(True)
        loss_fn(y, sup).backward()
        assert y.grad.shape == y.shape
        assert torch.isfinite(y.grad).all()

    def test_float32_output(self, case):
        trans_model, sup, nnet_output = case
        y = nnet_output.float().requires_grad_(True)
        loss = CctcLoss(trans_model)(y, sup)
        loss.backward()
        assert loss.dtype == torch.float32
        assert y.grad.dtype == torch.float32
