import logging
import math

import pytest
import torch
import torch.nn.functional as F

from ntm_circuit.addressing import (
    BetaSimilarity,
    ContentAddressing,
    GatedWeighting,
    Read,
    Refocus,
    ShiftedWeighting,
    Similarity,
    rotate,
    wrap_shift,
)
from ntm_circuit.errors import InvariantViolation, ShapeMismatch
from ntm_circuit.gradcheck import check_gradients
from ntm_circuit.units import DTYPE, Units, check_not_nan


def positive(*shape: int) -> Units:
    return Units.from_values(torch.rand(shape, dtype=DTYPE) + 0.1)


def normal(*shape: int) -> Units:
    return Units.from_values(torch.randn(shape, dtype=DTYPE))


def assert_node_gradients(build, inputs: dict[str, Units]) -> None:
    """Backward of a freshly built node against finite differences of a random projection of its output."""
    node = build()
    coefficients = torch.randn_like(node.top.val)
    node.top.grad += coefficients
    node.backward()

    def loss() -> float:
        return (build().top.val * coefficients).sum().item()

    assert check_gradients(loss, inputs) == []


def test_similarity_values():
    key = normal(4)
    memory = normal(5, 4)
    similarity = Similarity(key, memory)
    expected = F.cosine_similarity(key.val.unsqueeze(0), memory.val, dim=1)
    torch.testing.assert_close(similarity.top.val, expected)


def test_similarity_gradients():
    key = normal(3)
    memory = normal(4, 3)
    assert_node_gradients(lambda: Similarity(key, memory), {"key": key, "memory": memory})


def test_similarity_rejects_zero_norm():
    with pytest.raises(InvariantViolation, match="zero-norm"):
        Similarity(Units.zeros(2), normal(3, 2))

    memory = normal(3, 2)
    memory.val[1] = 0
    with pytest.raises(InvariantViolation, match="zero-norm"):
        Similarity(normal(2), memory)


def test_similarity_rejects_wrong_width():
    with pytest.raises(ShapeMismatch):
        Similarity(normal(3), normal(4, 2))


def test_beta_similarity():
    key = normal(3)
    memory = normal(4, 3)
    beta = Units.from_values(0.137350)
    scaled = BetaSimilarity(beta, Similarity(key, memory))
    torch.testing.assert_close(scaled.top.val, math.exp(0.137350) * Similarity(key, memory).top.val)
    assert_node_gradients(lambda: BetaSimilarity(beta, Similarity(key, memory)), {"beta": beta})


def test_beta_similarity_passes_gradient_to_similarity():
    key = normal(3)
    memory = normal(4, 3)
    beta = Units.from_values(-0.5)
    similarity = Similarity(key, memory)
    scaled = BetaSimilarity(beta, similarity)
    scaled.top.grad += 1.0
    scaled.backward()
    torch.testing.assert_close(similarity.top.grad, torch.full((4,), math.exp(-0.5), dtype=DTYPE))


def test_content_addressing_is_a_distribution():
    for scores in ([0.0, 0.0, 0.0], [1e4, -1e4, 3e3], [-50.0, -51.0, -52.0, -53.0]):
        ca = ContentAddressing(Units.from_values(scores))
        assert torch.isfinite(ca.top.val).all()
        assert (ca.top.val >= 0).all()
        assert abs(ca.top.val.sum().item() - 1) < 1e-9

    ca = ContentAddressing(Units.from_values([1.0, 2.0, 3.0]))
    torch.testing.assert_close(ca.top.val, torch.softmax(ca.units.val, dim=0))


def test_content_addressing_gradients():
    scores = normal(5)
    assert_node_gradients(lambda: ContentAddressing(scores), {"scores": scores})


def test_gated_weighting():
    content = Units.from_values([0.7, 0.2, 0.1])
    wtm1 = Units.from_values([0.1, 0.1, 0.8])

    gated = GatedWeighting(Units.from_values(0.0), content, wtm1)
    torch.testing.assert_close(gated.top.val, 0.5 * content.val + 0.5 * wtm1.val)
    assert abs(gated.top.val.sum().item() - 1) < 1e-9

    gated = GatedWeighting(Units.from_values(100.0), content, wtm1)
    torch.testing.assert_close(gated.top.val, content.val)


def test_gated_weighting_gradients():
    gate = normal()
    content = positive(4)
    wtm1 = positive(4)
    assert_node_gradients(
        lambda: GatedWeighting(gate, content, wtm1),
        {"gate": gate, "content": content, "wtm1": wtm1},
    )


def test_gated_weighting_rejects_mismatched_lengths():
    with pytest.raises(ShapeMismatch):
        GatedWeighting(normal(), positive(3), positive(4))


def test_wrap_shift():
    assert wrap_shift(0.5, 3) == 0.5
    assert wrap_shift(-0.5, 3) == 2.5
    assert wrap_shift(7.25, 3) == pytest.approx(1.25)
    assert wrap_shift(-1e-20, 3) == 0.0
    for amount in (-1e6, -3.7, -1e-9, 0.0, 0.999, 1e6 + 0.3):
        assert 0 <= wrap_shift(amount, 5) < 5


def test_rotate_integer_amount_is_a_roll():
    w = torch.tensor([0.1, 0.2, 0.3, 0.4], dtype=DTYPE)
    torch.testing.assert_close(rotate(w, 1.0), torch.roll(w, -1))
    torch.testing.assert_close(rotate(w, 3.0), torch.roll(w, -3))
    torch.testing.assert_close(rotate(w, 0.0), w)


def test_rotate_interpolates():
    w = torch.tensor([0.1, 0.2, 0.3, 0.4], dtype=DTYPE)
    torch.testing.assert_close(rotate(w, 0.25), 0.75 * w + 0.25 * torch.roll(w, -1))


@pytest.mark.parametrize("amount", [0.3, 1.7, -0.4, -2.9])
def test_rotate_is_periodic(amount):
    n = 5
    w = torch.rand(n, dtype=DTYPE)
    expected = rotate(w, amount)
    for k in (-1000, -3, -1, 1, 2, 1000):
        torch.testing.assert_close(rotate(w, amount + k * n), expected, atol=1e-9, rtol=0)


def test_shifted_weighting_zero_shift_is_identity():
    gated = Units.from_values([0.5, 0.3, 0.2])
    shifted = ShiftedWeighting(Units.from_values(0.0), gated)
    torch.testing.assert_close(shifted.top.val, gated.val)


@pytest.mark.parametrize("s", [-30.0, -2.0, -0.3, 0.4, 1.5, 30.0])
def test_shifted_weighting_is_a_distribution(s):
    w = torch.rand(7, dtype=DTYPE)
    shifted = ShiftedWeighting(Units.from_values(s), Units.from_values(w / w.sum()))
    assert 0 <= shifted.z < 7
    assert (shifted.top.val >= 0).all()
    assert abs(shifted.top.val.sum().item() - 1) < 1e-9


@pytest.mark.parametrize("s", [-1.3, 0.6])
def test_shifted_weighting_gradients(s):
    shift = Units.from_values(s)
    gated = positive(5)
    assert_node_gradients(lambda: ShiftedWeighting(shift, gated), {"shift": shift, "gated": gated})


def test_shifted_weighting_rejects_negative_weights():
    with pytest.raises(InvariantViolation):
        ShiftedWeighting(Units.from_values(0.3), Units.from_values([0.6, 0.6, -0.2]))


def test_refocus_sharpens():
    shifted = Units.from_values([0.5, 0.3, 0.2])
    refocus = Refocus(Units.from_values(1.9876), shifted)
    assert abs(refocus.top.val.sum().item() - 1) < 1e-9
    assert refocus.top.val[0] > 0.5
    assert refocus.top.val[2] < 0.2

    g = math.log(math.exp(1.9876) + 1) + 1
    expected = shifted.val**g
    torch.testing.assert_close(refocus.top.val, expected / expected.sum())


def test_refocus_gradients():
    gamma = normal()
    shifted = positive(4)
    assert_node_gradients(lambda: Refocus(gamma, shifted), {"gamma": gamma, "shifted": shifted})


def test_refocus_skips_vanishing_weights():
    shifted = Units.from_values([0.6, 0.4, 1e-20, 0.0])
    gamma = Units.from_values(0.3)
    refocus = Refocus(gamma, shifted)
    assert refocus.top.val[2:].tolist() == [0.0, 0.0]

    refocus.top.grad += torch.tensor([1.0, 2.0, 3.0, 4.0], dtype=DTYPE)
    refocus.backward()
    assert torch.isfinite(shifted.grad).all()
    assert shifted.grad[2:].tolist() == [0.0, 0.0]
    assert math.isfinite(gamma.grad.item())


def test_refocus_rejects_all_zero_input():
    with pytest.raises(InvariantViolation):
        Refocus(Units.from_values(0.0), Units.zeros(3))


def test_read():
    weights = Units.from_values([0.2, 0.8])
    memory = Units.from_values([[1.0, 2.0], [3.0, 4.0]])
    read = Read(weights, memory)
    torch.testing.assert_close(read.top.val, torch.tensor([2.6, 3.6], dtype=DTYPE))


def test_read_gradients():
    weights = positive(4)
    memory = normal(4, 3)
    assert_node_gradients(lambda: Read(weights, memory), {"weights": weights, "memory": memory})


def test_read_rejects_mismatched_weighting():
    with pytest.raises(ShapeMismatch):
        Read(positive(3), normal(4, 2))


def test_refocus_large_exponent_keeps_a_distribution():
    refocus = Refocus(Units.from_values(1000.0), Units.from_values([0.4, 0.35, 0.25]))
    assert abs(refocus.top.val.sum().item() - 1) < 1e-9
    assert refocus.top.val[0].item() == pytest.approx(1.0)


def test_refocus_large_exponent_over_wide_memory():
    """gamma_eff near 201 over 128 weights of about 1/128 each, where every raw power underflows."""
    x = 1 + 0.01 * torch.rand(128, dtype=DTYPE)
    shifted = Units.from_values(x / x.sum())
    gamma = Units.from_values(200.0)
    assert ((shifted.val ** (F.softplus(gamma.val) + 1)) == 0).all()

    refocus = Refocus(gamma, shifted)
    assert torch.isfinite(refocus.top.val).all()
    assert abs(refocus.top.val.sum().item() - 1) < 1e-9

    assert_node_gradients(lambda: Refocus(gamma, shifted), {"gamma": gamma})

    # Shifted gradients against autograd of the log-space form softmax(g * log x).
    shifted.zero_grad()
    refocus = Refocus(gamma, shifted)
    coefficients = torch.randn(128, dtype=DTYPE)
    refocus.top.grad += coefficients
    refocus.backward()
    x = shifted.val.clone().requires_grad_()
    expected = torch.softmax(refocus.g * torch.log(x), dim=0)
    torch.testing.assert_close(refocus.top.val, expected.detach())
    (expected * coefficients).sum().backward()
    torch.testing.assert_close(shifted.grad, x.grad)


def test_beta_similarity_rejects_overflowing_strength():
    similarity = Similarity(normal(3), normal(4, 3))
    with pytest.raises(InvariantViolation, match="exp\\(beta\\) overflows"):
        BetaSimilarity(Units.from_values(710.0), similarity)


def test_zero_norm_log_names_rows_not_values(caplog):
    memory = normal(128, 4)
    memory.val[37] = 0
    with caplog.at_level(logging.ERROR, logger="ntm_circuit.addressing"):
        with pytest.raises(InvariantViolation):
            Similarity(normal(4), memory)
    message = caplog.records[-1].getMessage()
    assert "[37]" in message
    assert len(message) < 200


def test_nan_log_names_indices_and_shapes(caplog):
    value = torch.zeros(1000, dtype=DTYPE)
    value[[3, 17]] = math.nan
    with caplog.at_level(logging.ERROR, logger="ntm_circuit.units"):
        with pytest.raises(InvariantViolation, match="read produced NaN"):
            check_not_nan("read", value, memory=torch.ones(128, 20, dtype=DTYPE), beta=torch.tensor(0.5))
    message = caplog.records[-1].getMessage()
    assert "[[3], [17]]" in message
    assert "shape (128, 20)" in message
    assert "beta=0.5" in message
    assert len(message) < 300
