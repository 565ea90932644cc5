"""Tests for image loading and output writers."""

# Standard Library Imports
import json

# Third Party Imports
import numpy as np
import pytest
import SimpleITK as sitk
import torch

# Local Imports
from mmreg.data import ImageData, load_image, load_mask, save_image, save_parameters
from mmreg.registration.base import LevelResult, RegistrationResult
from mmreg.registration.errors import StopCondition
from mmreg.registration.transforms import EulerTransform


class TestImageRoundTrip:
    """Geometry survives a SimpleITK write and read."""

    def test_geometry_in_tensor_axis_order(self, tmp_path):
        """Test that spacing and origin keep tensor-axis order on disk and back."""
        data = torch.arange(12, dtype=torch.float32).reshape(3, 4)
        image = ImageData(data=data, spacing=(2.0, 0.5), origin=(10.0, -4.0))

        path = save_image(image, tmp_path / "nested" / "image.mha")
        loaded = load_image(path)

        assert loaded.shape == (3, 4)
        assert loaded.spacing == (2.0, 0.5)
        assert loaded.origin == (10.0, -4.0)
        assert loaded.data.dtype == torch.float32
        assert torch.equal(loaded.data, data)

    def test_sitk_sees_reversed_geometry(self, tmp_path):
        """Test that SimpleITK stores spacing in (x, y) order."""
        image = ImageData(data=torch.zeros(3, 4), spacing=(2.0, 0.5))

        save_image(image, tmp_path / "image.nii.gz")

        sitk_image = sitk.ReadImage(str(tmp_path / "image.nii.gz"))
        assert sitk_image.GetSize() == (4, 3)
        assert sitk_image.GetSpacing() == pytest.approx((0.5, 2.0))

    def test_missing_file(self, tmp_path):
        """Test that a missing image is reported."""
        with pytest.raises(FileNotFoundError):
            load_image(tmp_path / "missing.mha")


class TestLoadMask:
    """Masks are binarised on load."""

    def test_non_zero_is_foreground(self, tmp_path):
        """Test that every non-zero label counts as foreground."""
        labels = np.array([[0, 1, 2], [0, 0, 7]], dtype=np.int16)
        sitk.WriteImage(sitk.GetImageFromArray(labels), str(tmp_path / "labels.mha"))

        mask = load_mask(tmp_path / "labels.mha")

        assert mask.data.tolist() == [[0.0, 1.0, 1.0], [0.0, 0.0, 1.0]]


class TestSaveParameters:
    """JSON summary of a registration result."""

    def test_summary_contents(self, tmp_path):
        """Test the transform name, center and per-level stop conditions."""
        transform = EulerTransform(2, center=torch.tensor([1.0, 2.0]))
        parameters = torch.tensor([0.1, 3.0, -1.0], dtype=torch.float64)
        level = LevelResult(
            level=0,
            stop_condition=StopCondition.STEP_TOO_SMALL,
            iterations=12,
            final_value=0.25,
            elapsed_seconds=0.5,
            final_parameters=parameters,
        )
        result = RegistrationResult(final_parameters=parameters, levels=[level], transform=transform)

        path = save_parameters(result, tmp_path / "parameters.json")
        summary = json.loads(path.read_text())

        assert summary["transform"] == "euler"
        assert summary["center"] == [1.0, 2.0]
        assert summary["final_parameters"] == pytest.approx([0.1, 3.0, -1.0])
        assert summary["levels"][0]["stop_condition"] == "STEP_TOO_SMALL"
        assert summary["levels"][0]["iterations"] == 12
