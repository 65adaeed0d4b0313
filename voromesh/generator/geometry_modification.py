"""
Anisotropic geometry modification.

The surface is transformed before meshing so that uniform cells in the
transformed space become stretched cells in the original space. The
transform is recorded and reverted on the volume mesh once meshing in the
transformed space is finished.
"""
import logging
from typing import Dict, List

import numpy as np

from .constants import GEOMETRY_MODIFIED_KEY
from .errors import ConfigError, ResourceStateError

logger = logging.getLogger(__name__)


class GeometryModificationRecord:
    """
    Diagonal affine transform x' = scale * x + offset composed from the
    meshDict anisotropicSources.

    Each source scales coordinates about its origin (plane) or centre (box)
    by (scaleX, scaleY, scaleZ). Sources are applied in the order they are
    declared.
    """

    def __init__(self, scale, offset, sources: List[str] = None):
        self.scale = np.array(scale, dtype=float).reshape(3)
        self.offset = np.array(offset, dtype=float).reshape(3)
        if np.any(self.scale <= 0):
            raise ConfigError(f"Anisotropic scaling factors must be positive, got {self.scale.tolist()}")
        self.sources = list(sources or [])
        self.consumed = False

    @classmethod
    def from_mesh_dict(cls, mesh_dict) -> "GeometryModificationRecord":
        sources = mesh_dict.sub_dict("anisotropicSources")
        scale = np.ones(3)
        offset = np.zeros(3)
        names = []

        for name in sources.toc():
            source = sources.sub_dict(name)
            source_type = source.get_or_default("type", "box")
            key = "centre" if source_type == "box" else "origin"
            centre = np.array(source.get_or_default(key, source.get_or_default("origin", [0.0, 0.0, 0.0])),
                              dtype=float)
            if centre.shape != (3,):
                raise ConfigError(f"anisotropicSources/{name}/{key} must be a 3-vector")

            factors = np.array([
                float(source.get_or_default("scaleX", 1.0)),
                float(source.get_or_default("scaleY", 1.0)),
                float(source.get_or_default("scaleZ", 1.0)),
            ])

            # Compose x -> c + s * (x - c) with the transform accumulated so far
            scale = factors * scale
            offset = factors * offset + centre * (1.0 - factors)
            names.append(name)

        record = cls(scale, offset, names)
        logger.info(f"Geometry modification from {len(names)} anisotropic source(s): "
                    f"scale={record.scale.tolist()}")
        return record

    def modify_points(self, points: np.ndarray) -> np.ndarray:
        return np.asarray(points, dtype=float) * self.scale + self.offset

    def revert_points(self, points: np.ndarray) -> np.ndarray:
        return (np.asarray(points, dtype=float) - self.offset) / self.scale

    def modify_surface(self, surface):
        """Transformed copy of the surface used to build the spatial index"""
        return surface.with_points(self.modify_points(surface.points),
                                   name=f"{surface.name}_modified")

    def revert_mesh(self, mesh) -> None:
        """Move the volume mesh back to the original space (once only)"""
        if self.consumed:
            raise ResourceStateError("Geometry modification has already been reverted")
        mesh.set_points(self.revert_points(mesh.points))
        mesh.metadata[GEOMETRY_MODIFIED_KEY] = False
        self.consumed = True
        logger.info("Reverted geometry modification on the volume mesh")

    def to_dict(self) -> Dict:
        return {
            "scale": self.scale.tolist(),
            "offset": self.offset.tolist(),
            "sources": list(self.sources)
        }
