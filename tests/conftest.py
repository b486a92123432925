"""
Pytest configuration for torch-cctc tests.

IMPORTANT: CPU-ONLY TESTING
---------------------------
This test suite is designed to run on CPU only. All tests should:
1. Use CPU tensors (the default)
2. Not require CUDA to pass
"""

import pytest
import torch

from torch_cctc import CctcSupervision, CctcTransitionModel


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_cuda: mark test as requiring CUDA (will be skipped if not available)",
    )


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Tests create CPU tensors by default."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture
def skip_if_no_cuda():
    """Fixture to skip tests that require CUDA."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")


def make_ctc_supervision(trans_model, phones, num_frames, weight=1.0):
    """Builds a supervision where each frame emits either blank or the next phone.

    State ``(t, k)`` means ``k`` phones were emitted in the first ``t`` frames.
    States that cannot reach ``(num_frames, len(phones))`` are pruned. The
    history state after ``k`` phones follows the transition model.

    Test-only helper; supervision construction is not part of the library.
    """
    K = len(phones)
    if K > num_frames:
        raise ValueError("more phones than frames")

    histories = [trans_model.initial_history_state]
    for p in phones:
        histories.append(int(trans_model.next_history_state[histories[-1], p]))

    state_ids = {}
    for t in range(num_frames + 1):
        for k in range(K + 1):
            if k <= t and K - k <= num_frames - t:
                state_ids[(t, k)] = len(state_ids)

    arcs = []
    for (t, k), s in state_ids.items():
        if t == num_frames:
            continue
        h = histories[k]
        if (t + 1, k) in state_ids:
            arcs.append((s, state_ids[(t + 1, k)], trans_model.graph_label(h, 0)))
        if k < K and (t + 1, k + 1) in state_ids:
            arcs.append((s, state_ids[(t + 1, k + 1)], trans_model.graph_label(h, phones[k])))

    return CctcSupervision(
        len(state_ids),
        arcs,
        label_dim=trans_model.num_graph_labels,
        start_state=state_ids[(0, 0)],
        final_states=[state_ids[(num_frames, K)]],
        weight=weight,
    )


def enumerate_path_logprobs(supervision, arc_logprobs):
    """Brute-force list of the log-probability of every complete path."""
    out_arcs = {}
    for i, arc in enumerate(supervision.arcs):
        out_arcs.setdefault(arc.src, []).append((i, arc.dst))

    totals = []

    def walk(state, acc):
        if state in supervision.final_states:
            totals.append(acc)
        for i, dst in out_arcs.get(state, []):
            walk(dst, acc + float(arc_logprobs[i]))

    walk(supervision.start_state, 0.0)
    return totals


@pytest.fixture
def bigram_model():
    """Three phones, bigram history, context-dependent blanks."""
    bigram = torch.tensor(
        [
            [0.5, 0.3, 0.2],
            [0.2, 0.2, 0.6],
            [0.3, 0.4, 0.3],
            [0.1, 0.1, 0.8],
        ],
        dtype=torch.float64,
    )
    return CctcTransitionModel.from_bigram(bigram, blank_prob=0.4)


@pytest.fixture
def shared_output_model():
    """Two history states where two phones share an output index."""
    next_history_state = torch.tensor([[0, 1, 0], [1, 1, 0]])
    output_index = torch.tensor([[0, 1, 1], [2, 1, 3]])
    lm_prob = torch.tensor([[0.5, 0.3, 0.2], [0.6, 0.1, 0.3]], dtype=torch.float64)
    return CctcTransitionModel(next_history_state, output_index, lm_prob)


@pytest.fixture
def single_output_model():
    """One history state, blank only, one output index."""
    return CctcTransitionModel(
        torch.tensor([[0]]), torch.tensor([[0]]), torch.tensor([[1.0]], dtype=torch.float64)
    )


@pytest.fixture
def ctc_supervision():
    """Factory for CTC-style supervisions (see :func:`make_ctc_supervision`)."""
    return make_ctc_supervision


@pytest.fixture
def random_nnet_output():
    """Factory for reproducible log-domain network outputs."""

    def _create(rows, cols, seed=0, dtype=torch.float64, scale=1.0):
        generator = torch.Generator().manual_seed(seed)
        return torch.randn(rows, cols, generator=generator, dtype=dtype) * scale

    return _create


@pytest.fixture
def path_logprobs():
    """Brute-force path enumerator (see :func:`enumerate_path_logprobs`)."""
    return enumerate_path_logprobs
