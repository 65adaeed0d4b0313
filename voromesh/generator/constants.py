"""
Constants for the Voronoi mesh generation pipeline.
All stage names, thresholds and iteration counts centralized here.
"""
from dataclasses import dataclass
from typing import Dict, Any, Tuple

# Fixed order of the conditional pipeline steps
STAGE_NAMES: Tuple[str, ...] = (
    "templateGeneration",
    "surfaceTopology",
    "surfaceProjection",
    "patchAssignment",
    "edgeExtraction",
    "boundaryLayerGeneration",
    "meshOptimisation",
    "boundaryLayerRefinement",
)

DEFAULT_PATCH_NAME = "defaultFaces"
DEFAULT_PATCH_TYPE = "patch"
BOUNDARY_LAYER_CELLS = "boundaryLayerCells"
DEFAULT_MESH_DICT = "system/meshDict.json"

# Mesh metadata keys carried into meshMetaDict.json
GEOMETRY_MODIFIED_KEY = "geometryModified"   # points still in the anisotropic space
LAST_STEP_KEY = "lastStep"                    # last pipeline stage completed

@dataclass
class OctreeParams:
    """Spatial index refinement controls"""
    MAX_OCTREE_LEVEL = 10
    ROOT_BOX_PADDING = 0.05         # Root box = surface bounds enlarged by 5%
    # Boundary refinement used by the back-projection pass
    BACK_PROJECTION_MAX_LEVEL = 20
    BACK_PROJECTION_TRIANGLES_PER_LEAF = 30

@dataclass
class SurfaceParams:
    """Surface loading and feature handling"""
    MERGE_TOLERANCE = 1e-9          # Relative to bounding box diagonal
    EMESH_MATCH_TOLERANCE = 1e-6    # Relative to bounding box diagonal
    CORNER_MIN_PATCHES = 3

@dataclass
class MappingParams:
    """Projection of the mesh boundary onto the surface"""
    PRE_MAP_RELAXATION = 0.5
    PRE_MAP_ITERATIONS = 2
    ISOLATED_FACE_ITERATIONS = 3

@dataclass
class OptimizerParams:
    """Mesh and surface optimisation"""
    SURFACE_SMOOTHING_ITERATIONS = 5
    SURFACE_RELAXATION = 0.5
    UNTANGLE_ITERATIONS = 20
    UNTANGLE_RELAXATION = 0.5
    VOLUME_SMOOTHING_ITERATIONS = 5
    VOLUME_RELAXATION = 0.3
    LOW_QUALITY_NON_ORTHO = 65.0    # Degrees
    MIN_VOLUME_RATIO = 0.05         # Constrained moves keep 5% of the cell volume
    CONSTRAINT_TOLERANCE = 1e-6     # Relative to surface size
    MAX_BACKTRACK_STEPS = 4

@dataclass
class LayerParams:
    """Boundary layer insertion and refinement"""
    INSERTION_THICKNESS_RATIO = 0.25    # Fraction of the distance to the owner cell centre
    THICKNESS_RATIO_DEFAULT = 1.0
    MAX_LAYERS = 50

@dataclass
class MorphParams:
    """Surface morphing"""
    MAX_MORPH_ITERATIONS = 50

# Export all constants as a single config dict, same as the other modules expect
DEFAULT_CONSTANTS: Dict[str, Any] = {
    'octree': OctreeParams(),
    'surface': SurfaceParams(),
    'mapping': MappingParams(),
    'optimizer': OptimizerParams(),
    'layers': LayerParams(),
    'morph': MorphParams(),
}
