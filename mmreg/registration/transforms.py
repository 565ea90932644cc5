"""
MMREG Transforms

Parametric spatial transforms with a flat parameter vector.

Each transform maps physical points of the fixed image into the moving
image. ``transform_points`` is written with differentiable torch
operations, so metric derivatives with respect to the parameters come
from autograd.

Parameter layouts (2-D / 3-D):
    translation: [t0, t1] / [t0, t1, t2]
    euler:       [angle, t0, t1] / [a0, a1, a2, t0, t1, t2]
    affine:      row-major matrix entries followed by the translation
    affinedti:   [angle, shear, s0, s1, t0, t1] /
                 [a0, a1, a2, g01, g02, g12, s0, s1, s2, t0, t1, t2]
"""

from typing import Callable, Dict, Optional

import torch

from .errors import ConfigurationError


class Transform:
    """Base class for transforms with a fixed-length parameter vector"""

    name = "transform"

    def __init__(self, ndim: int, center: Optional[torch.Tensor] = None):
        if ndim not in (2, 3):
            raise ConfigurationError(f"Transforms support 2-D and 3-D, got ndim={ndim}")
        self.ndim = ndim
        self.set_center(center)

    def set_center(self, center: Optional[torch.Tensor]):
        """Set the center of rotation (physical coordinates)."""
        if center is None:
            center = torch.zeros(self.ndim, dtype=torch.float64)
        self.center = torch.as_tensor(center, dtype=torch.float64).reshape(self.ndim)

    @property
    def number_of_parameters(self) -> int:
        raise NotImplementedError

    def identity_parameters(self) -> torch.Tensor:
        raise NotImplementedError

    def matrix(self, parameters: torch.Tensor) -> torch.Tensor:
        """Linear part of the transform as an (ndim, ndim) matrix."""
        raise NotImplementedError

    def translation(self, parameters: torch.Tensor) -> torch.Tensor:
        return parameters[-self.ndim:]

    def transform_points(self, points: torch.Tensor, parameters: torch.Tensor) -> torch.Tensor:
        """
        Map (N, ndim) physical points.

        y = A (x - c) + c + t
        """
        parameters = parameters.to(points.dtype)
        center = self.center.to(device=points.device, dtype=points.dtype)
        matrix = self.matrix(parameters)
        return (points - center) @ matrix.T + center + self.translation(parameters)

    def check_parameters(self, parameters: torch.Tensor):
        if parameters.numel() != self.number_of_parameters:
            raise ValueError(
                f"{self.name} transform expects {self.number_of_parameters} parameters, "
                f"got {parameters.numel()}"
            )


class TranslationTransform(Transform):
    name = "translation"

    @property
    def number_of_parameters(self) -> int:
        return self.ndim

    def identity_parameters(self) -> torch.Tensor:
        return torch.zeros(self.ndim, dtype=torch.float64)

    def matrix(self, parameters: torch.Tensor) -> torch.Tensor:
        return torch.eye(self.ndim, dtype=parameters.dtype, device=parameters.device)

    def transform_points(self, points: torch.Tensor, parameters: torch.Tensor) -> torch.Tensor:
        return points + parameters.to(points.dtype)


class EulerTransform(Transform):
    """Rigid transform: rotation angles (radians) followed by translation"""

    name = "euler"

    @property
    def number_of_angles(self) -> int:
        return 1 if self.ndim == 2 else 3

    @property
    def number_of_parameters(self) -> int:
        return self.number_of_angles + self.ndim

    def identity_parameters(self) -> torch.Tensor:
        return torch.zeros(self.number_of_parameters, dtype=torch.float64)

    def matrix(self, parameters: torch.Tensor) -> torch.Tensor:
        if self.ndim == 2:
            angle = parameters[0]
            c, s = torch.cos(angle), torch.sin(angle)
            return torch.stack([torch.stack([c, -s]), torch.stack([s, c])])

        one = torch.ones((), dtype=parameters.dtype, device=parameters.device)
        zero = torch.zeros((), dtype=parameters.dtype, device=parameters.device)
        cx, sx = torch.cos(parameters[0]), torch.sin(parameters[0])
        cy, sy = torch.cos(parameters[1]), torch.sin(parameters[1])
        cz, sz = torch.cos(parameters[2]), torch.sin(parameters[2])
        rx = torch.stack([
            torch.stack([one, zero, zero]),
            torch.stack([zero, cx, -sx]),
            torch.stack([zero, sx, cx]),
        ])
        ry = torch.stack([
            torch.stack([cy, zero, sy]),
            torch.stack([zero, one, zero]),
            torch.stack([-sy, zero, cy]),
        ])
        rz = torch.stack([
            torch.stack([cz, -sz, zero]),
            torch.stack([sz, cz, zero]),
            torch.stack([zero, zero, one]),
        ])
        return rz @ ry @ rx


class AffineTransform(Transform):
    name = "affine"

    @property
    def number_of_parameters(self) -> int:
        return self.ndim * self.ndim + self.ndim

    def identity_parameters(self) -> torch.Tensor:
        return torch.cat([
            torch.eye(self.ndim, dtype=torch.float64).reshape(-1),
            torch.zeros(self.ndim, dtype=torch.float64),
        ])

    def matrix(self, parameters: torch.Tensor) -> torch.Tensor:
        return parameters[: self.ndim * self.ndim].reshape(self.ndim, self.ndim)


class AffineDTITransform(EulerTransform):
    """
    Affine transform as rotation, shear and scale: A = R U S

    R is the Euler rotation, U is unit upper-triangular with the shears
    above its diagonal and S is the diagonal of scales. Parameters are the
    angles, shears, scales and translation, in that order.
    """

    name = "affinedti"

    @property
    def number_of_shears(self) -> int:
        return self.ndim * (self.ndim - 1) // 2

    @property
    def number_of_parameters(self) -> int:
        return self.number_of_angles + self.number_of_shears + 2 * self.ndim

    def identity_parameters(self) -> torch.Tensor:
        parameters = torch.zeros(self.number_of_parameters, dtype=torch.float64)
        start = self.number_of_angles + self.number_of_shears
        parameters[start:start + self.ndim] = 1.0
        return parameters

    def matrix(self, parameters: torch.Tensor) -> torch.Tensor:
        angles = self.number_of_angles
        shears = parameters[angles:angles + self.number_of_shears]
        scales = parameters[angles + self.number_of_shears:angles + self.number_of_shears + self.ndim]

        rows, cols = torch.triu_indices(self.ndim, self.ndim, offset=1, device=parameters.device)
        shear = torch.eye(self.ndim, dtype=parameters.dtype, device=parameters.device)
        shear = shear.index_put((rows, cols), shears)
        return super().matrix(parameters) @ shear @ torch.diag(scales)


TRANSFORMS: Dict[str, Callable[..., Transform]] = {
    "translation": TranslationTransform,
    "euler": EulerTransform,
    "affine": AffineTransform,
    "affinedti": AffineDTITransform,
}


def create_transform(name: str, ndim: int, center: Optional[torch.Tensor] = None) -> Transform:
    """
    Create a transform by registry name

    Args:
        name: Key of TRANSFORMS
        ndim: Spatial dimension (2 or 3)
        center: Optional center of rotation

    Returns:
        Transform instance
    """
    try:
        factory = TRANSFORMS[name.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown transform '{name}'. Available: {sorted(TRANSFORMS)}") from None
    return factory(ndim, center)
