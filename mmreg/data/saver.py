"""
MMREG Output Writers

Save images through SimpleITK and registration parameters as JSON.
"""

import json
from pathlib import Path
from typing import Union

import numpy as np
import torch
import SimpleITK as sitk

from .image import ImageData
from ..utils.logging_config import get_logger

logger = get_logger("saver")


def save_image(image: ImageData, output_path: Union[str, Path], description: str = "") -> Path:
    """
    Save an image with its spacing and origin

    Args:
        image: Image in tensor axis order
        output_path: Output file path; the extension selects the format
        description: Description for logging

    Returns:
        Path to saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = image.data
    if isinstance(data, torch.Tensor):
        data = data.detach().cpu().numpy()
    sitk_image = sitk.GetImageFromArray(np.asarray(data, dtype=np.float32))
    # SimpleITK geometry is in (x, y[, z]) order
    sitk_image.SetSpacing(tuple(reversed(image.spacing)))
    sitk_image.SetOrigin(tuple(reversed(image.origin)))
    sitk.WriteImage(sitk_image, str(output_path))

    logger.info(f"Saved {description or 'image'}: {output_path.name}")
    return output_path


def save_parameters(result, output_path: Union[str, Path]) -> Path:
    """
    Save final parameters and per-level summaries of a RegistrationResult

    Args:
        result: RegistrationResult
        output_path: Output JSON path

    Returns:
        Path to saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    transform = result.transform
    summary = result.summary()
    summary["center"] = transform.center.tolist() if hasattr(transform, "center") else None

    with open(output_path, "w") as f:
        json.dump(summary, f, indent=2)

    logger.info(f"Saved parameters: {output_path.name}")
    return output_path
