"""
voromesh - Voronoi volume mesh generation

Staged pipeline turning a closed STL surface and a meshDict into a
polyhedral volume mesh written as an OpenFOAM polyMesh.
"""

from .generator import (
    MeshDict, MeshOutputContext, VoronoiMeshGenerator, BuildResult,
    MeshGenerationError, read_poly_mesh
)

__version__ = "1.0.0"
__all__ = ["MeshDict", "MeshOutputContext", "VoronoiMeshGenerator", "BuildResult",
           "MeshGenerationError", "read_poly_mesh"]
