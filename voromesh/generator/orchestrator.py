"""
Voronoi mesh generator: the staged meshing pipeline.

VoronoiMeshGenerator loads the surface, builds the octree, runs the named
stages in their fixed order subject to the StepController, and owns every
intermediate resource until build() returns.
"""
import logging
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .config_manager import MeshDict, check_mesh_dict
from .constants import DEFAULT_CONSTANTS, GEOMETRY_MODIFIED_KEY, LAST_STEP_KEY
from .errors import MeshGenerationError, ResourceStateError, StageError
from .geometry import SurfacePatchManipulator, TriSurface, surface_meta_data
from .geometry_modification import GeometryModificationRecord
from .mesh_io import MeshOutputContext
from .octree import MeshOctree, OctreeCreator
from .operations import StageOperations
from .step_controller import StepController
from .volume_mesh import VolumeMesh
from ..utils import process_memory_mb

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """Outcome of VoronoiMeshGenerator.build()"""
    success: bool
    mesh: Optional[VolumeMesh] = None
    failure: Optional[str] = None       # None, "descriptive" or "generic"
    message: str = ""
    executed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)


@dataclass
class PipelineStep:
    """One named stage: runs when the controller allows it and its guard holds"""
    name: str
    action: Callable[[], None]
    guard: Callable[[], bool] = lambda: True


class VoronoiMeshGenerator:
    """
    Staged mesh generation from a closed surface.

    Construction only stores its inputs; build() runs the whole process and
    returns a BuildResult. The mesh is committed to the output context only
    when every stage succeeded.
    """

    def __init__(self, mesh_dict: Union[MeshDict, Dict], context: MeshOutputContext,
                 operations: Optional[StageOperations] = None,
                 resume_from: Optional[str] = None,
                 initial_mesh: Optional[VolumeMesh] = None):
        self.mesh_dict = mesh_dict if isinstance(mesh_dict, MeshDict) else MeshDict(mesh_dict)
        self.context = context
        self.operations = operations or StageOperations()
        self.resume_from = resume_from
        self.controller: Optional[StepController] = None

        # Working mesh, replaced in place by the template stage; the caller's
        # initial mesh is copied and never modified
        self.mesh = initial_mesh.copy() if initial_mesh is not None else VolumeMesh.empty()
        self.meta_data: Dict = {}

        # Owned resources, released by close()
        self.surface: Optional[TriSurface] = None
        self.modified_surface: Optional[TriSurface] = None
        self.octree: Optional[MeshOctree] = None
        self.modification: Optional[GeometryModificationRecord] = None

        self.result: Optional[BuildResult] = None
        self.closed = False

    # ------------------------------------------------------------------ public API

    def build(self) -> BuildResult:
        """
        Run the meshing process.

        Never raises: failures are logged and reported through the result.
        """
        if self.result is not None:
            return self.result

        result = BuildResult(success=False)
        start = time.time()
        try:
            if self.closed:
                raise ResourceStateError("Generator has already been closed")
            self._construct(result)
            if self.mesh.metadata.get(GEOMETRY_MODIFIED_KEY):
                logger.warning("Mesh is committed in the anisotropic space, "
                               "resume from meshOptimisation to revert it")
            self.context.commit(self.mesh, self.meta_data)
            result.success = True
            result.mesh = self.mesh
            result.message = (f"Mesh generated: {self.mesh.n_cells} cells, "
                              f"{len(self.mesh.patches)} patches")
            logger.info(result.message)
        except MeshGenerationError as e:
            result.failure = "descriptive"
            result.message = str(e)
            logger.error(f"Mesh generation failed: {e}")
        except Exception as e:
            result.failure = "generic"
            result.message = f"Meshing process terminated! ({type(e).__name__}: {e})"
            logger.warning("Meshing process terminated!")
            logger.debug(traceback.format_exc())
        finally:
            self.close()

        result.timings["total"] = time.time() - start
        self.result = result
        return result

    def write_mesh(self) -> Path:
        """Write the committed mesh through the output context"""
        return self.context.write()

    def close(self) -> None:
        """Release every owned resource; safe to call more than once"""
        self._dispose_octree()
        self._dispose_modified_surface()
        self._dispose_surface()
        self.modification = None
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ------------------------------------------------------------------ resources

    def _dispose_octree(self) -> None:
        if self.octree is not None:
            octree, self.octree = self.octree, None
            octree.close()

    def _dispose_modified_surface(self) -> None:
        if self.modified_surface is not None:
            surface, self.modified_surface = self.modified_surface, None
            surface.close()

    def _dispose_surface(self) -> None:
        if self.surface is not None:
            surface, self.surface = self.surface, None
            surface.close()

    def _require_octree(self) -> MeshOctree:
        if self.octree is None:
            raise ResourceStateError("The octree is required but has not been built or was released")
        return self.octree

    def _build_octree(self, surface: TriSurface, refined_boundary: bool = False) -> None:
        """Replace the live octree with a new one over the given surface"""
        self._dispose_octree()
        octree = MeshOctree(surface)
        self.octree = octree
        creator = OctreeCreator(octree, self.mesh_dict)
        if refined_boundary:
            constants = DEFAULT_CONSTANTS['octree']
            creator.create_octree_with_refined_boundary(
                constants.BACK_PROJECTION_MAX_LEVEL, constants.BACK_PROJECTION_TRIANGLES_PER_LEAF)
        else:
            creator.create_octree_boxes()

    # ------------------------------------------------------------------ construction

    def _construct(self, result: BuildResult) -> None:
        check_mesh_dict(self.mesh_dict)
        self.controller = StepController.from_mesh_dict(self.mesh_dict, self.resume_from)
        if not self.controller.should_run("templateGeneration") and self.mesh.is_empty():
            raise StageError(f"Resuming from '{self.controller.resume_from}' requires an "
                             f"intermediate mesh")
        if (not self.controller.should_run("templateGeneration")
                and self.mesh.metadata.get(GEOMETRY_MODIFIED_KEY, False)
                and not self.mesh_dict.found("anisotropicSources")):
            raise StageError("Resumed mesh is in the anisotropic space but "
                             f"{self.mesh_dict.name} has no anisotropicSources")

        self._load_surface()

        if self.mesh_dict.found("anisotropicSources") and self._mesh_in_modified_space():
            self.modification = GeometryModificationRecord.from_mesh_dict(self.mesh_dict)
            self.modified_surface = self.modification.modify_surface(self.surface)
            self._build_octree(self.modified_surface)
        else:
            self._build_octree(self.surface)

        self._generate_mesh(result)

    def _mesh_in_modified_space(self) -> bool:
        """
        Whether meshing continues in the anisotropic space.

        A new template is always built there; a resumed mesh carries the
        answer in its metadata.
        """
        if self.controller.should_run("templateGeneration"):
            return True
        if self.mesh.metadata.get(GEOMETRY_MODIFIED_KEY, False):
            return True
        logger.info("Resumed mesh is already in the original space, "
                    "anisotropic sources are not applied again")
        return False

    def _load_surface(self) -> None:
        surface_file = self.mesh_dict.lookup("surfaceFile")
        path = Path(surface_file)
        if not path.is_absolute():
            path = self.context.case_dir / path

        self.surface = TriSurface.from_file(path)
        self.meta_data = {
            "surfaceFile": surface_file,
            "surfaceMeta": surface_meta_data(self.surface)
        }

        if len(self.surface.feature_edges):
            with_patches = SurfacePatchManipulator(self.surface).surface_with_patches(self.mesh_dict)
            self._dispose_surface()
            self.surface = with_patches

    def _pipeline(self) -> List[PipelineStep]:
        return [
            PipelineStep("templateGeneration", self._create_template),
            PipelineStep("surfaceTopology", self._surface_preparation),
            PipelineStep("surfaceProjection", self._map_mesh_to_surface),
            PipelineStep("patchAssignment", self._extract_patches),
            PipelineStep("edgeExtraction", self._map_edges_and_corners),
            PipelineStep("boundaryLayerGeneration", self._generate_boundary_layers,
                         guard=lambda: self.mesh_dict.found("boundaryLayers")),
            PipelineStep("meshOptimisation", self._optimise_final_mesh),
            PipelineStep("boundaryLayerRefinement", self._refine_boundary_layers,
                         guard=lambda: self.mesh_dict.is_dict("boundaryLayers")),
        ]

    def _generate_mesh(self, result: BuildResult) -> None:
        for step in self._pipeline():
            if not self.controller.should_run(step.name):
                logger.info(f"Skipping step {step.name}")
                result.skipped_steps.append(step.name)
                continue
            if not step.guard():
                logger.info(f"Step {step.name} not requested in {self.mesh_dict.name}")
                result.skipped_steps.append(step.name)
                continue
            self._run_step(step.name, step.action, result)
            if self.mesh.is_empty():
                raise StageError("Step produced an empty mesh", stage=step.name)
            self.mesh.metadata[LAST_STEP_KEY] = step.name

        self._run_step("renumberMesh", self._renumber_mesh, result)
        self._run_step("replaceBoundaries", self._replace_boundaries, result)

    def _run_step(self, name: str, action: Callable[[], None], result: BuildResult) -> None:
        logger.info(f"Running step {name}")
        start = time.time()
        try:
            action()
        except MeshGenerationError as e:
            if e.stage is None:
                e.stage = name
            raise
        elapsed = time.time() - start
        result.executed_steps.append(name)
        result.timings[name] = elapsed
        logger.debug(f"Step {name} finished in {elapsed:.2f}s, "
                     f"memory {process_memory_mb():.0f} MB, {self.mesh}")

    # ------------------------------------------------------------------ stages

    def _create_template(self) -> None:
        template = self.operations.create_template(self._require_octree(), self.mesh_dict)
        self.mesh.replace_with(template)
        self.mesh.metadata[GEOMETRY_MODIFIED_KEY] = self.modification is not None

    def _surface_preparation(self) -> None:
        self.operations.morph_surface(self.mesh)

    def _map_mesh_to_surface(self) -> None:
        self.operations.map_mesh_to_surface(self.mesh, self._require_octree(), pre_map=True)

    def _extract_patches(self) -> None:
        self.operations.extract_patches(self.mesh, self._require_octree())

    def _map_edges_and_corners(self) -> None:
        octree = self._require_octree()
        self.operations.map_edges_and_corners(self.mesh, octree)
        self.operations.optimise_mesh_surface(self.mesh, octree)

    def _generate_boundary_layers(self) -> None:
        if not self.mesh_dict.is_dict("boundaryLayers"):
            logger.warning("boundaryLayers is not a dictionary, no layers added")
            return

        layers = self.mesh_dict.sub_dict("boundaryLayers")
        n_layers = layers.read_if_present("nLayers")
        if n_layers is not None:
            if n_layers > 0:
                self.operations.add_layer_for_all_patches(self.mesh)
        elif layers.is_dict("patchBoundaryLayers"):
            patch_names = layers.sub_dict("patchBoundaryLayers").toc()
            self.operations.add_layer_for_patches(self.mesh, patch_names)

    def _optimise_final_mesh(self) -> None:
        enforce = bool(self.mesh_dict.get_or_default("enforceGeometryConstraints", False))

        for finalisation_pass in range(2):
            surface_optimizer = self.operations.surface_optimizer(self.mesh, self._require_octree())
            if enforce:
                surface_optimizer.enforce_constraints()
            surface_optimizer.optimise_surface()

            self._dispose_octree()

            optimizer = self.operations.mesh_optimizer(self.mesh)
            if enforce:
                optimizer.enforce_constraints()
            optimizer.optimise_mesh_fv()
            optimizer.optimise_low_quality_faces()
            optimizer.optimise_boundary_layer(False)
            optimizer.untangle_mesh_fv()

            self.mesh.clear_addressing_data()

            if self.modification is not None and self.mesh.metadata.get(GEOMETRY_MODIFIED_KEY):
                self.modification.revert_mesh(self.mesh)
                self._dispose_modified_surface()

            if finalisation_pass > 0 or self.modification is None:
                break

            # Back-projection onto the original surface, then one more pass
            self._build_octree(self.surface, refined_boundary=True)
            self.operations.map_mesh_to_surface(self.mesh, self.octree, pre_map=False)

    def _refine_boundary_layers(self) -> None:
        points_in_layer = self.operations.refine_boundary_layers(self.mesh, self.mesh_dict)

        optimizer = self.operations.mesh_optimizer(self.mesh)
        optimizer.lock_points(points_in_layer)
        optimizer.untangle_boundary_layer()

    def _renumber_mesh(self) -> None:
        self.operations.renumber_mesh(self.mesh)

    def _replace_boundaries(self) -> None:
        self.operations.rename_boundary_patches(self.mesh, self.mesh_dict)
