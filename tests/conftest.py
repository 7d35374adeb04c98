"""
Pytest configuration for torch-criterion tests.

IMPORTANT: CPU-ONLY TESTING
---------------------------
This test suite is designed to run on CPU only. Label tensors of the
class-based and CRF criteria must live in host memory anyway; tests that
exercise the accelerator placement contract are marked ``requires_cuda``
and skipped when CUDA is not available.

All tests should:
1. Use CPU tensors (the default)
2. Build graphs in float64 when comparing against finite differences
"""

import pytest
import torch

from torch_criterion import ComputationNetwork, set_default_config


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_cuda: mark test as requiring CUDA (will be skipped if not available)",
    )


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Verify tensors default to the CPU before each test."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture(autouse=True)
def reset_default_config():
    """Tests that install a process-wide config must not leak it."""
    set_default_config(None)
    yield
    set_default_config(None)


@pytest.fixture
def cpu_device():
    """Fixture providing CPU device for explicit device placement."""
    return torch.device("cpu")


@pytest.fixture
def skip_if_no_cuda():
    """Fixture to skip tests that require CUDA."""
    if not torch.cuda.is_available():
        pytest.skip("CUDA not available")


@pytest.fixture
def net():
    """An empty float64 network on the CPU."""
    return ComputationNetwork(dtype=torch.float64)


def finite_difference_gradient(func, x, eps=1e-6):
    """
    Compute gradient of func(x) using central finite differences.

    Args:
        func: Function that takes a tensor and returns a scalar
        x: Input tensor
        eps: Finite difference step size

    Returns:
        Tensor of same shape as x containing numerical gradients
    """
    grad = torch.zeros_like(x)
    x_flat = x.reshape(-1)
    grad_flat = grad.view(-1)

    for i in range(x_flat.numel()):
        x_plus = x_flat.clone()
        x_minus = x_flat.clone()
        x_plus[i] += eps
        x_minus[i] -= eps

        f_plus = func(x_plus.view_as(x))
        f_minus = func(x_minus.view_as(x))

        grad_flat[i] = (f_plus - f_minus) / (2 * eps)

    return grad


@pytest.fixture
def numerical_gradient():
    """Fixture exposing :func:`finite_difference_gradient`."""
    return finite_difference_gradient


def loss_as_function_of(net, root, handle):
    """Return f(x) that sets ``handle`` to ``x``, runs forward and returns the loss."""
    node = net[handle]

    def func(x):
        node.set_value(x)
        return net.forward(root).item()

    return func


@pytest.fixture
def loss_function():
    """Fixture exposing :func:`loss_as_function_of`."""
    return loss_as_function_of
