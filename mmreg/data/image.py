"""
MMREG Image Container

Minimal spatial image: a 2-D or 3-D tensor plus the physical spacing and
origin of its voxel grid, both in tensor-axis order.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import torch


@dataclass(frozen=True)
class ImageData:
    """
    Image tensor with voxel geometry

    The physical coordinate of voxel index ``i`` is ``origin + i * spacing``.

    Attributes:
        data: Image tensor of shape (H, W) or (D, H, W)
        spacing: Voxel size per tensor axis
        origin: Physical position of voxel index 0 per tensor axis
    """
    data: torch.Tensor
    spacing: Tuple[float, ...] = field(default=None)
    origin: Tuple[float, ...] = field(default=None)

    def __post_init__(self):
        data = torch.as_tensor(self.data)
        if data.dim() not in (2, 3):
            raise ValueError(f"Only 2-D and 3-D images are supported, got shape {tuple(data.shape)}")
        object.__setattr__(self, "data", data)

        spacing = self.spacing if self.spacing is not None else (1.0,) * data.dim()
        origin = self.origin if self.origin is not None else (0.0,) * data.dim()
        if len(spacing) != data.dim() or len(origin) != data.dim():
            raise ValueError(
                f"spacing {spacing} and origin {origin} must have {data.dim()} entries"
            )
        object.__setattr__(self, "spacing", tuple(float(s) for s in spacing))
        object.__setattr__(self, "origin", tuple(float(o) for o in origin))

    @property
    def ndim(self) -> int:
        return self.data.dim()

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.data.shape)

    def spacing_tensor(self, dtype=torch.float64) -> torch.Tensor:
        return torch.tensor(self.spacing, dtype=dtype, device=self.data.device)

    def origin_tensor(self, dtype=torch.float64) -> torch.Tensor:
        return torch.tensor(self.origin, dtype=dtype, device=self.data.device)

    def index_to_physical(self, indices: torch.Tensor) -> torch.Tensor:
        """Map (N, ndim) voxel indices to physical points."""
        return self.origin_tensor(indices.dtype) + indices * self.spacing_tensor(indices.dtype)

    def physical_to_index(self, points: torch.Tensor) -> torch.Tensor:
        """Map (N, ndim) physical points to continuous voxel indices."""
        return (points - self.origin_tensor(points.dtype)) / self.spacing_tensor(points.dtype)

    def center(self) -> torch.Tensor:
        """Physical position of the grid center."""
        extent = torch.tensor([s - 1 for s in self.shape], dtype=torch.float64) / 2.0
        return self.index_to_physical(extent.unsqueeze(0)).squeeze(0)

    def with_data(self, data: torch.Tensor, spacing: Optional[Tuple[float, ...]] = None,
                  origin: Optional[Tuple[float, ...]] = None) -> "ImageData":
        """New image sharing this geometry unless overridden."""
        return ImageData(
            data=data,
            spacing=spacing if spacing is not None else self.spacing,
            origin=origin if origin is not None else self.origin,
        )
