"""
Voronoi mesh generation pipeline - staged, meshDict driven.

Modules:

- MeshDict / check_mesh_dict: meshDict loading and validation
- StepController: which named steps run (resume / stop points)
- TriSurface, SurfacePatchManipulator: input surface and feature-edge patches
- GeometryModificationRecord: reversible anisotropic transform
- MeshOctree, OctreeCreator: spatial index over the surface
- VolumeMesh: the polyhedral mesh shared by all steps
- StageOperations: the geometric operations run by each step
- MeshOutputContext: receives and writes the finished mesh
- VoronoiMeshGenerator: the pipeline itself

Usage:
    from voromesh.generator import MeshDict, MeshOutputContext, VoronoiMeshGenerator

    context = MeshOutputContext(case_dir)
    result = VoronoiMeshGenerator(MeshDict.from_case(case_dir), context).build()
    if result.success:
        context.write()
"""

from .config_manager import MeshDict, check_mesh_dict
from .constants import STAGE_NAMES, DEFAULT_CONSTANTS
from .errors import MeshGenerationError, ConfigError, StageError, ResourceStateError
from .geometry import TriSurface, SurfacePatchManipulator
from .geometry_modification import GeometryModificationRecord
from .mesh_io import MeshOutputContext, read_poly_mesh
from .octree import MeshOctree, OctreeCreator
from .operations import StageOperations
from .orchestrator import BuildResult, PipelineStep, VoronoiMeshGenerator
from .step_controller import StepController
from .volume_mesh import BoundaryPatch, VolumeMesh

__all__ = [
    "MeshDict",
    "check_mesh_dict",
    "STAGE_NAMES",
    "DEFAULT_CONSTANTS",
    "MeshGenerationError",
    "ConfigError",
    "StageError",
    "ResourceStateError",
    "TriSurface",
    "SurfacePatchManipulator",
    "GeometryModificationRecord",
    "MeshOutputContext",
    "read_poly_mesh",
    "MeshOctree",
    "OctreeCreator",
    "StageOperations",
    "BuildResult",
    "PipelineStep",
    "VoronoiMeshGenerator",
    "StepController",
    "BoundaryPatch",
    "VolumeMesh",
]
