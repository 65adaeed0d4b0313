"""
Mesh quality optimisation and untangling.

MeshSurfaceOptimizer works on boundary points and needs the octree for
reprojection; MeshOptimizer works on the volume and needs nothing but the
mesh, so it can run after the octree has been released.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable

import numpy as np

from .constants import DEFAULT_CONSTANTS, BOUNDARY_LAYER_CELLS
from .errors import ResourceStateError

logger = logging.getLogger(__name__)


def boundary_point_normals(mesh) -> Dict[int, np.ndarray]:
    """Area weighted outward unit normals at boundary points"""
    areas = mesh.face_areas
    sums = defaultdict(lambda: np.zeros(3))
    for f in mesh.boundary_faces():
        for p in mesh.faces[f]:
            sums[p] = sums[p] + areas[f]

    normals = {}
    for p, vector in sums.items():
        magnitude = np.linalg.norm(vector)
        normals[p] = vector / magnitude if magnitude > 0 else vector
    return normals


class _PointMover:
    """Point displacement with backtracking on deteriorating cells"""

    def __init__(self, mesh):
        self.mesh = mesh
        self.constants = DEFAULT_CONSTANTS['optimizer']
        self.enforce = False
        self._reference_volumes = None
        self.constrained_points = set()

    def _threshold(self) -> np.ndarray:
        if self.enforce and self._reference_volumes is not None \
                and len(self._reference_volumes) == self.mesh.n_cells:
            return self.constants.MIN_VOLUME_RATIO * np.maximum(self._reference_volumes, 0.0)
        return np.zeros(self.mesh.n_cells)

    def _free(self, labels: Iterable[int]) -> np.ndarray:
        locked = self.mesh.locked_points
        return np.array(sorted(p for p in labels if p not in locked), dtype=np.int64)

    def _move_points(self, labels, targets) -> int:
        """
        Move points to their targets. Steps of points belonging to cells that
        shrink below the volume threshold are halved, then dropped.

        Returns:
            Number of points that moved
        """
        mesh = self.mesh
        labels = np.asarray(labels, dtype=np.int64)
        if not len(labels):
            return 0

        original = mesh.points.copy()
        before = mesh.cell_volumes.copy()
        threshold = self._threshold()
        displacement = np.asarray(targets, dtype=float) - original[labels]

        points = original
        for _ in range(self.constants.MAX_BACKTRACK_STEPS + 1):
            points = original.copy()
            points[labels] += displacement
            mesh.set_points(points)
            after = mesh.cell_volumes
            damaged = np.flatnonzero((after < before) & (after <= threshold))
            if not len(damaged):
                break
            damaged_points = {p for c in damaged.tolist() for p in mesh.cell_points(c)}
            mask = np.isin(labels, list(damaged_points))
            displacement[mask] *= 0.5
        else:
            points[labels[mask]] = original[labels[mask]]
            displacement[mask] = 0.0
            mesh.set_points(points)
            if self.enforce:
                self.constrained_points.update(labels[mask].tolist())

        return int(np.count_nonzero(np.linalg.norm(displacement, axis=1) > 0))

    def _bad_cells(self) -> np.ndarray:
        return np.flatnonzero(self.mesh.cell_volumes <= 0)

    def _cell_average_targets(self, labels: np.ndarray, relaxation: float) -> np.ndarray:
        """Relaxed move of points towards the average centre of their cells"""
        mesh = self.mesh
        centres = mesh.cell_centres
        point_cells = mesh.point_cells
        targets = np.empty((len(labels), 3))
        for i, p in enumerate(labels.tolist()):
            average = centres[point_cells[p]].mean(axis=0)
            targets[i] = mesh.points[p] + relaxation * (average - mesh.points[p])
        return targets


class MeshSurfaceOptimizer(_PointMover):
    """Smoothing and untangling of the boundary, keeping points on the surface"""

    def __init__(self, mesh, octree):
        if octree is None or octree.closed:
            raise ResourceStateError("Surface optimisation requires a live octree")
        super().__init__(mesh)
        self.octree = octree

    def _project(self, points: np.ndarray) -> np.ndarray:
        projected, _, _ = self.octree.find_nearest_surface_points(points)
        return projected

    def _smoothing_targets(self, labels: np.ndarray, relaxation: float) -> np.ndarray:
        mesh = self.mesh
        neighbours = mesh.boundary_point_neighbours()
        targets = np.empty((len(labels), 3))
        for i, p in enumerate(labels.tolist()):
            average = mesh.points[sorted(neighbours[p])].mean(axis=0)
            targets[i] = mesh.points[p] + relaxation * (average - mesh.points[p])
        return self._project(targets)

    def enforce_constraints(self) -> int:
        """Pull boundary points back onto the surface and keep later moves volume-safe"""
        self.enforce = True
        self._reference_volumes = self.mesh.cell_volumes.copy()

        labels = self._free(self.mesh.boundary_points.tolist())
        if not len(labels):
            return 0
        projected, distances, _ = self.octree.find_nearest_surface_points(self.mesh.points[labels])
        tolerance = self.constants.CONSTRAINT_TOLERANCE * self.octree.root_size
        off_surface = distances > tolerance
        moved = self._move_points(labels[off_surface], projected[off_surface])
        logger.info(f"Surface constraints: {moved} boundary points returned to the surface")
        return moved

    def optimise_surface(self) -> int:
        """Laplacian smoothing of boundary points inside patches, with reprojection"""
        point_patches = self.mesh.boundary_point_patches()
        labels = self._free(p for p, patches in point_patches.items() if len(patches) == 1)

        moved = 0
        for _ in range(self.constants.SURFACE_SMOOTHING_ITERATIONS):
            if not len(labels):
                break
            targets = self._smoothing_targets(labels, self.constants.SURFACE_RELAXATION)
            moved = self._move_points(labels, targets)
            if not moved:
                break

        logger.info(f"Optimised mesh surface: {len(labels)} smoothable points, "
                    f"{moved} moved in the last iteration")
        return moved

    def inverted_boundary_faces(self) -> np.ndarray:
        """Boundary faces pointing into their cell or attached to an inverted cell"""
        mesh = self.mesh
        boundary = np.arange(mesh.n_internal_faces, mesh.n_faces)
        if not len(boundary):
            return boundary
        owner = mesh.owner[boundary]
        outward = np.einsum('ij,ij->i', mesh.face_areas[boundary],
                            mesh.face_centres[boundary] - mesh.cell_centres[owner])
        bad = (outward <= 0) | (mesh.cell_volumes[owner] <= 0)
        return boundary[bad]

    def untangle_surface(self) -> int:
        """
        Repair inverted boundary faces by smoothing their points.

        Returns:
            Number of inverted boundary faces left
        """
        mesh = self.mesh
        bad_faces = self.inverted_boundary_faces()
        initial = len(bad_faces)

        for _ in range(self.constants.UNTANGLE_ITERATIONS):
            if not len(bad_faces):
                break
            boundary_set = set(mesh.boundary_points.tolist())
            face_points = {p for f in bad_faces.tolist() for p in mesh.faces[f]}
            cell_points = {p for f in bad_faces.tolist()
                           for p in mesh.cell_points(int(mesh.owner[f]))} - boundary_set

            surface_labels = self._free(face_points)
            volume_labels = self._free(cell_points)
            moved = 0
            if len(surface_labels):
                moved += self._move_points(
                    surface_labels,
                    self._smoothing_targets(surface_labels, self.constants.UNTANGLE_RELAXATION))
            if len(volume_labels):
                moved += self._move_points(
                    volume_labels,
                    self._cell_average_targets(volume_labels, self.constants.UNTANGLE_RELAXATION))

            bad_faces = self.inverted_boundary_faces()
            if not moved:
                break

        if len(bad_faces):
            logger.warning(f"Surface untangling left {len(bad_faces)} inverted boundary faces")
        elif initial:
            logger.info(f"Untangled {initial} boundary faces")
        return int(len(bad_faces))


class MeshOptimizer(_PointMover):
    """Volume smoothing and untangling of internal points"""

    def lock_points(self, labels: Iterable[int]) -> None:
        self.mesh.lock_points(labels)
        logger.debug(f"Locked {len(self.mesh.locked_points)} points")

    def enforce_constraints(self) -> None:
        """Restrict later moves so no cell drops below a fraction of its current volume"""
        self.enforce = True
        self._reference_volumes = self.mesh.cell_volumes.copy()

    def _internal_points(self) -> np.ndarray:
        boundary = np.zeros(self.mesh.n_points, dtype=bool)
        boundary[self.mesh.boundary_points] = True
        return self._free(np.flatnonzero(~boundary).tolist())

    def _smooth(self, labels: np.ndarray, iterations: int, relaxation: float) -> int:
        moved = 0
        for _ in range(iterations):
            if not len(labels):
                break
            moved = self._move_points(labels, self._cell_average_targets(labels, relaxation))
            if not moved:
                break
        return moved

    def optimise_mesh_fv(self) -> int:
        labels = self._internal_points()
        moved = self._smooth(labels, self.constants.VOLUME_SMOOTHING_ITERATIONS,
                             self.constants.VOLUME_RELAXATION)
        logger.info(f"Optimised mesh volume: {len(labels)} internal points")
        return moved

    def optimise_low_quality_faces(self) -> int:
        """Smooth the points of internal faces above the non-orthogonality limit"""
        mesh = self.mesh
        n_internal = mesh.n_internal_faces
        if not n_internal:
            return 0
        non_ortho = mesh.face_non_orthogonality()[:n_internal]
        bad = np.flatnonzero(non_ortho > self.constants.LOW_QUALITY_NON_ORTHO)
        if not len(bad):
            return 0

        internal = set(self._internal_points().tolist())
        labels = np.array(sorted({p for f in bad.tolist() for p in mesh.faces[f]} & internal),
                          dtype=np.int64)
        self._smooth(labels, self.constants.VOLUME_SMOOTHING_ITERATIONS,
                     self.constants.VOLUME_RELAXATION)
        logger.info(f"Optimised {len(bad)} low quality faces")
        return int(len(bad))

    def optimise_boundary_layer(self, relax_layers: bool = False) -> int:
        """
        Align boundary layer edges with the boundary normal.

        Layer thickness is kept per edge, or smoothed over neighbouring edges
        when relax_layers is set.
        """
        mesh = self.mesh
        if not len(mesh.layer_edges):
            return 0

        boundary = set(mesh.boundary_points.tolist())
        locked = mesh.locked_points
        pairs = [(int(o), int(i)) for o, i in mesh.layer_edges.tolist()
                 if o in boundary and i not in boundary and i not in locked]
        if not pairs:
            return 0

        normals = boundary_point_normals(mesh)
        points = mesh.points
        thickness = {o: float(np.linalg.norm(points[o] - points[i])) for o, i in pairs}

        if relax_layers:
            neighbours = mesh.boundary_point_neighbours()
            relaxed = {}
            for o, value in thickness.items():
                values = [thickness[n] for n in neighbours[o] if n in thickness] + [value]
                relaxed[o] = float(np.mean(values))
            thickness = relaxed

        labels = np.array([i for _, i in pairs], dtype=np.int64)
        targets = np.array([points[o] - normals[o] * thickness[o] for o, _ in pairs])
        moved = self._move_points(labels, targets)
        logger.info(f"Optimised boundary layer: {moved} of {len(pairs)} layer points moved")
        return moved

    def untangle_mesh_fv(self) -> int:
        """
        Untangle inverted cells by smoothing their free internal points.

        Returns:
            Number of inverted cells left
        """
        bad = self._bad_cells()
        initial = len(bad)
        internal = set(self._internal_points().tolist())

        for _ in range(self.constants.UNTANGLE_ITERATIONS):
            if not len(bad):
                break
            labels = np.array(sorted({p for c in bad.tolist() for p in self.mesh.cell_points(c)}
                                     & internal), dtype=np.int64)
            if not len(labels):
                break
            moved = self._move_points(
                labels, self._cell_average_targets(labels, self.constants.UNTANGLE_RELAXATION))
            bad = self._bad_cells()
            if not moved:
                break

        if len(bad):
            logger.warning(f"Mesh untangling left {len(bad)} inverted cells")
        elif initial:
            logger.info(f"Untangled {initial} cells")
        return int(len(bad))

    def untangle_boundary_layer(self) -> int:
        """Untangle the mesh around boundary layers, leaving locked layer points in place"""
        remaining = self.untangle_mesh_fv()
        layer_cells = self.mesh.cell_sets.get(BOUNDARY_LAYER_CELLS, set())
        bad_layer_cells = sum(1 for c in self._bad_cells().tolist() if c in layer_cells)
        if bad_layer_cells:
            logger.warning(f"{bad_layer_cells} inverted boundary layer cells remain")
        return remaining
