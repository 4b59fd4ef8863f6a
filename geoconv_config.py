"""
geoconv Configuration
Per-call settings: B-Rep tessellation tolerances, vertex welding, output naming
and the optional axis/unit conversion applied at the glTF boundary.
"""

import math
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_LINEAR_TOLERANCE = 0.01
DEFAULT_ANGULAR_TOLERANCE = math.radians(30.0)


@dataclass(frozen=True)
class TessellationSettings:
    """Bounds for approximating B-Rep surfaces with triangles.

    linear_tolerance is the maximum chord deviation in model units,
    angular_tolerance the maximum angle between adjacent facets in radians.
    """
    linear_tolerance: float = DEFAULT_LINEAR_TOLERANCE
    angular_tolerance: float = DEFAULT_ANGULAR_TOLERANCE

    def __post_init__(self):
        if not self.linear_tolerance > 0:
            raise ValueError(f"linear_tolerance must be positive, got {self.linear_tolerance}")
        if not 0 < self.angular_tolerance < math.pi:
            raise ValueError(f"angular_tolerance must be in (0, pi) radians, got {self.angular_tolerance}")

    @classmethod
    def from_degrees(cls, linear_tolerance: float = DEFAULT_LINEAR_TOLERANCE,
                     angular_degrees: float = 30.0) -> "TessellationSettings":
        return cls(linear_tolerance, math.radians(angular_degrees))


@dataclass(frozen=True)
class ConversionSettings:
    tessellation: TessellationSettings = field(default_factory=TessellationSettings)
    # None follows the source format's topology, True/False forces vertex welding
    weld_vertices: Optional[bool] = None
    output_basename: str = "model"
    # glTF is Y-up in meters; these convert GLB/glTF input to Z-up millimeters
    # on import and back again on GLB/glTF export
    gltf_y_up_to_z_up: bool = False
    gltf_meters_to_millimeters: bool = False

    @property
    def transforms_gltf(self) -> bool:
        return self.gltf_y_up_to_z_up or self.gltf_meters_to_millimeters

    def __post_init__(self):
        if not self.output_basename or "/" in self.output_basename or "\\" in self.output_basename:
            raise ValueError(f"output_basename must be a plain file stem, got {self.output_basename!r}")
