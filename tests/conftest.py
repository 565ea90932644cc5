"""Shared fixtures for the mmreg test suite."""

# Third Party Imports
import pytest
import torch

# Local Imports
from mmreg.data.image import ImageData
from mmreg.registration.errors import SamplesNotAvailableError


class QuadraticMeasure:
    """Cost 0.5 * sum(scale * (p - minimum)^2) with a known minimum."""

    def __init__(self, minimum, scale=1.0, name="quadratic"):
        self.minimum = torch.as_tensor(minimum, dtype=torch.float64)
        self.scale = torch.as_tensor(scale, dtype=torch.float64)
        self.name = name
        self.levels = []
        self.parameters = None
        self.calls = 0

    def set_level(self, context):
        self.levels.append(context.level)

    def set_transform_parameters(self, parameters):
        self.parameters = parameters.clone()

    def get_value_and_derivative(self, parameters):
        self.calls += 1
        diff = parameters - self.minimum
        value = 0.5 * float((self.scale * diff * diff).sum())
        return value, self.scale * diff


class ConstantGradientMeasure:
    """Fixed value and gradient, whatever the parameters."""

    def __init__(self, value, gradient, name="constant"):
        self.value = value
        self.gradient = torch.as_tensor(gradient, dtype=torch.float64)
        self.name = name

    def get_value_and_derivative(self, parameters):
        return self.value, self.gradient.clone()


class FailingMeasure:
    """Raises the given exception once `fail_at` evaluations have succeeded."""

    def __init__(self, inner, fail_at=0, error=None, name="failing"):
        self.inner = inner
        self.fail_at = fail_at
        self.error = error or SamplesNotAvailableError("not enough samples")
        self.name = name
        self.calls = 0

    def get_value_and_derivative(self, parameters):
        self.calls += 1
        if self.calls > self.fail_at:
            raise self.error
        return self.inner.get_value_and_derivative(parameters)


def make_blob(shape=(32, 32), center=(16.0, 16.0), sigma=4.0, spacing=(1.0, 1.0)):
    """Gaussian blob image with the given geometry."""
    grids = torch.meshgrid(*[torch.arange(s, dtype=torch.float64) for s in shape], indexing="ij")
    squared = sum((g - c) ** 2 for g, c in zip(grids, center))
    data = torch.exp(-squared / (2.0 * sigma ** 2)).to(torch.float32)
    return ImageData(data=data, spacing=spacing)


@pytest.fixture
def quadratic():
    return QuadraticMeasure(minimum=[2.0, -3.0])


@pytest.fixture
def fixed_blob():
    return make_blob(center=(16.0, 16.0))


@pytest.fixture
def moving_blob():
    """The fixed blob moved by (+2, -1) voxels."""
    return make_blob(center=(18.0, 15.0))


@pytest.fixture
def full_mask():
    return ImageData(data=torch.ones(32, 32))


@pytest.fixture
def make_quadratic():
    return QuadraticMeasure


@pytest.fixture
def make_constant():
    return ConstantGradientMeasure


@pytest.fixture
def make_failing():
    return FailingMeasure


@pytest.fixture
def make_image():
    return make_blob
