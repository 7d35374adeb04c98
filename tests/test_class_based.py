"""Tests for the class-factored softmax criterion."""

import pytest
import torch

from torch_criterion import (
    ClassBasedCrossEntropyWithSoftmaxNode,
    DeviceResidencyViolation,
    InvalidInputType,
    MinibatchLayout,
    ShapeMismatch,
    StructuralLabelError,
    UnsupportedGradient,
)

H, V, C, T = 3, 6, 3, 4
CLASS_RANGES = [(0, 2), (2, 5), (5, 6)]


def make_label(words):
    """Build the 4-row label (word, class, left, right) for ``words``."""
    rows = []
    for w in words:
        cls = next(i for i, (l, r) in enumerate(CLASS_RANGES) if l <= w < r)
        rows.append([w, cls, *CLASS_RANGES[cls]])
    return torch.tensor(rows, dtype=torch.float64).t()


def reference_loss(label, hidden, weight, class_scores, columns=None):
    columns = range(label.shape[1]) if columns is None else columns
    class_log_probs = torch.log_softmax(class_scores, dim=0)
    total = 0.0
    for t in columns:
        w, c, l, r = (int(v) for v in label[:, t])
        if r == l:
            continue
        word_log_probs = torch.log_softmax(hidden[:, t] @ weight[:, l:r], dim=0)
        total = total + word_log_probs[w - l] + class_log_probs[c, t]
    return -total


@pytest.fixture
def graph(net):
    torch.manual_seed(5)
    values = {
        "hidden": torch.randn(H, T, dtype=torch.float64),
        "weight": torch.randn(H, V, dtype=torch.float64),
        "class_scores": torch.randn(C, T, dtype=torch.float64),
    }
    label = net.input("label")
    hidden = net.parameter("hidden", value=values["hidden"])
    weight = net.parameter("weight", value=values["weight"])
    classes = net.parameter("class_scores", value=values["class_scores"])
    loss = net.create(
        ClassBasedCrossEntropyWithSoftmaxNode, "cls", label, hidden, weight, classes
    )
    return net, loss, label, hidden, weight, classes, values


class TestClassBasedForward:
    def test_loss_matches_reference(self, graph):
        net, loss, label, *_, values = graph
        y = make_label([0, 3, 5, 2])
        net.set_value(label, y)
        net.validate(loss)
        expected = reference_loss(y, values["hidden"], values["weight"], values["class_scores"])
        assert net.forward(loss).item() == pytest.approx(expected.item())

    def test_single_class_covering_vocabulary_is_full_softmax(self, net):
        torch.manual_seed(0)
        hidden_value = torch.randn(H, T, dtype=torch.float64)
        weight_value = torch.randn(H, V, dtype=torch.float64)
        words = torch.tensor([1, 4, 0, 5])
        y = torch.zeros(4, T, dtype=torch.float64)
        y[0] = words.to(torch.float64)
        y[3] = float(V)
        label = net.input("label")
        net.set_value(label, y)
        hidden = net.parameter("hidden", value=hidden_value)
        weight = net.parameter("weight", value=weight_value)
        classes = net.parameter("class_scores", value=torch.zeros(1, T, dtype=torch.float64))
        loss = net.create(
            ClassBasedCrossEntropyWithSoftmaxNode, "cls", label, hidden, weight, classes
        )
        net.validate(loss)
        expected = torch.nn.functional.cross_entropy(
            hidden_value.t() @ weight_value, words, reduction="sum"
        )
        assert net.forward(loss).item() == pytest.approx(expected.item())

    def test_empty_range_with_word_zero_is_skipped(self, graph):
        net, loss, label, *_, values = graph
        y = make_label([0, 3, 5, 2])
        y[:, 1] = torch.tensor([0.0, 0.0, 2.0, 2.0])
        net.set_value(label, y)
        net.validate(loss)
        expected = reference_loss(
            y, values["hidden"], values["weight"], values["class_scores"], columns=[0, 2, 3]
        )
        assert net.forward(loss).item() == pytest.approx(expected.item())

    def test_empty_range_with_nonzero_word_rejected(self, graph):
        net, loss, label, *_ = graph
        y = make_label([0, 3, 5, 2])
        y[:, 1] = torch.tensor([3.0, 1.0, 2.0, 2.0])
        net.set_value(label, y)
        net.validate(loss)
        with pytest.raises(StructuralLabelError, match="empty class range"):
            net.forward(loss)

    def test_word_outside_class_range_rejected(self, graph):
        net, loss, label, *_ = graph
        y = make_label([0, 3, 5, 2])
        y[0, 1] = 0.0  # class 1 spans [2, 5)
        net.set_value(label, y)
        net.validate(loss)
        with pytest.raises(StructuralLabelError, match="outside its class range"):
            net.forward(loss)

    def test_class_out_of_range_rejected(self, graph):
        net, loss, label, *_ = graph
        y = make_label([0, 3, 5, 2])
        y[1, 2] = float(C)
        net.set_value(label, y)
        net.validate(loss)
        with pytest.raises(StructuralLabelError, match="class 3"):
            net.forward(loss)

    def test_padded_column_ignored_even_with_bad_label(self, graph):
        net, loss, label, hidden, *_, values = graph
        y = make_label([0, 3, 5, 2])
        y[:, 3] = torch.tensor([9.0, 9.0, 9.0, 1.0])
        net.set_value(label, y)
        net.validate(loss)
        net.set_layout(MinibatchLayout.from_lengths([3], num_time_steps=T))
        expected = reference_loss(
            y, values["hidden"], values["weight"], values["class_scores"], columns=[0, 1, 2]
        )
        assert net.forward(loss).item() == pytest.approx(expected.item())
        net.backward(loss)
        assert torch.all(net[hidden].gradient_value[:, 3] == 0)

    def test_per_column_log_probabilities(self, graph):
        net, loss, label, *_, values = graph
        y = make_label([0, 3, 5, 2])
        net.set_value(label, y)
        net.validate(loss)
        net.forward(loss)
        per_column = net[loss].log_probabilities()
        assert per_column.shape == (T,)
        assert -per_column.sum().item() == pytest.approx(net[loss].function_value.item())


class TestClassBasedBackward:
    def test_gradients_match_autograd(self, graph):
        net, loss, label, hidden, weight, classes, values = graph
        y = make_label([1, 3, 5, 4])
        net.set_value(label, y)
        net.validate(loss)
        net.forward(loss)
        net.backward(loss, seed=1.5)

        h = values["hidden"].clone().requires_grad_(True)
        w = values["weight"].clone().requires_grad_(True)
        u = values["class_scores"].clone().requires_grad_(True)
        (1.5 * reference_loss(y, h, w, u)).backward()

        torch.testing.assert_close(net[hidden].gradient_value, h.grad)
        torch.testing.assert_close(net[weight].gradient_value, w.grad)
        torch.testing.assert_close(net[classes].gradient_value, u.grad)

    def test_softmax_partial_cached_per_forward(self, graph):
        net, loss, label, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2]))
        net.validate(loss)
        net.forward(loss)
        net.backward(loss)
        node = net[loss]
        cached = node._grad_to_softmax_input
        node.compute_input_partial(1)
        assert node._grad_to_softmax_input is cached

        net.forward(loss)
        net.backward(loss)
        assert node._grad_to_softmax_input is not cached

    def test_copy_reuses_cached_partial(self, graph):
        net, loss, label, hidden, weight, classes, _ = graph
        net.set_value(label, make_label([1, 4, 5, 0]))
        net.validate(loss)
        net.forward(loss)
        net.backward(loss)
        expected = net[hidden].gradient_value.clone()

        twin = net.create(
            ClassBasedCrossEntropyWithSoftmaxNode, "twin", label, hidden, weight, classes
        )
        net[loss].copy_to(net[twin])
        cached = net[twin]._grad_to_softmax_input
        net[hidden].zero_gradient()
        net[twin].compute_input_partial(1)
        assert net[twin]._grad_to_softmax_input is cached
        torch.testing.assert_close(net[hidden].gradient_value, expected)

    def test_label_gradient_unsupported(self, graph):
        net, loss, label, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2]))
        net.validate(loss)
        net.forward(loss)
        with pytest.raises(UnsupportedGradient):
            net[loss].compute_input_partial(0)


class TestClassBasedValidation:
    def test_label_needs_four_rows(self, graph):
        net, loss, label, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2])[:3])
        with pytest.raises(ShapeMismatch, match="4 rows"):
            net.validate(loss)

    def test_label_must_be_input_value(self, net):
        label = net.parameter("label", value=make_label([0, 3, 5, 2]))
        hidden = net.parameter("hidden", value=torch.randn(H, T))
        weight = net.parameter("weight", value=torch.randn(H, V))
        classes = net.parameter("class_scores", value=torch.randn(C, T))
        loss = net.create(
            ClassBasedCrossEntropyWithSoftmaxNode, "cls", label, hidden, weight, classes
        )
        with pytest.raises(InvalidInputType):
            net.validate(loss)

    def test_hidden_weight_rows_must_agree(self, graph):
        net, loss, label, hidden, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2]))
        net.set_value(hidden, torch.randn(H + 1, T))
        with pytest.raises(ShapeMismatch, match="weight"):
            net.validate(loss)

    @pytest.mark.requires_cuda
    def test_label_on_accelerator_rejected(self, graph, skip_if_no_cuda):
        net, loss, label, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2]))
        net.move_to_device("cuda")
        with pytest.raises(DeviceResidencyViolation):
            net.validate(loss)

    @pytest.mark.requires_cuda
    def test_other_inputs_may_live_on_accelerator(self, graph, skip_if_no_cuda):
        net, loss, label, *_ = graph
        net.set_value(label, make_label([0, 3, 5, 2]))
        net.move_to_device("cuda", skip=[label])
        net.validate(loss)
        net.forward(loss)
        net.backward(loss)
