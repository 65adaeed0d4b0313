"""
Octree spatial index over the meshing surface.

The octree is built once over one surface and then only queried. When a finer
index or a different surface is needed, a new octree is built and the old one
is released.
"""
import logging
from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from .constants import DEFAULT_CONSTANTS
from .errors import ResourceStateError, StageError
from ..utils import closest_points_on_triangles, closest_points_on_segments, count_ray_crossings

logger = logging.getLogger(__name__)

# Skewed ray direction so that parity rays avoid surface edges and vertices
_RAY_DIRECTION = np.array([0.8733046, 0.3219737, 0.3655178])
_RAY_DIRECTION /= np.linalg.norm(_RAY_DIRECTION)


class MeshOctree:
    """Octree over the triangles of one surface"""

    def __init__(self, surface):
        self.surface = surface
        self.constants = DEFAULT_CONSTANTS['octree']
        self.closed = False

        points = surface.points
        a, b, c = surface.triangle_corners()
        self._tri_a, self._tri_b, self._tri_c = a, b, c
        self._tri_min = np.minimum(np.minimum(a, b), c)
        self._tri_max = np.maximum(np.maximum(a, b), c)
        self._regions = np.asarray(surface.regions)

        bb_min = points.min(axis=0)
        bb_max = points.max(axis=0)
        centre = 0.5 * (bb_min + bb_max)
        half = 0.5 * float(np.max(bb_max - bb_min)) * (1.0 + self.constants.ROOT_BOX_PADDING)
        if half <= 0:
            raise StageError("Cannot build an octree over a surface with zero extent")

        self.root_min = centre - half
        self.root_size = 2.0 * half

        # Leaves: (min corner, size, level, triangle ids)
        self._leaf_min = self.root_min[None, :].copy()
        self._leaf_size = np.array([self.root_size])
        self._leaf_level = np.array([0], dtype=int)
        self._leaf_tris: List[np.ndarray] = [np.arange(len(a))]
        self.refined = False

        self._patch_edges = None
        self._corners = None

        logger.debug(f"Octree root box: min={self.root_min.tolist()}, size={self.root_size:.6g}")

    def _check_open(self) -> None:
        if self.closed:
            raise ResourceStateError("Octree has already been released")

    @property
    def n_leaves(self) -> int:
        self._check_open()
        return len(self._leaf_size)

    @property
    def max_level(self) -> int:
        self._check_open()
        return int(self._leaf_level.max())

    def leaf_boxes(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Leaf box minimum corners, sizes and levels"""
        self._check_open()
        return self._leaf_min, self._leaf_size, self._leaf_level

    def level_for_size(self, size: float) -> int:
        """Smallest level whose box size does not exceed the given size"""
        level = int(np.ceil(np.log2(self.root_size / size))) if size < self.root_size else 0
        return max(0, level)

    def box_size(self, level: int) -> float:
        return self.root_size / (2 ** level)

    def _triangles_in_box(self, candidates: np.ndarray, box_min, size) -> np.ndarray:
        box_max = box_min + size
        overlap = np.all((self._tri_min[candidates] <= box_max) &
                         (self._tri_max[candidates] >= box_min), axis=1)
        return candidates[overlap]

    def refine(self, should_split) -> int:
        """
        Split every leaf for which should_split(size, level, n_triangles) holds.
        Used by OctreeCreator only; refinement ends with mark_refined().

        Returns:
            Number of leaves split
        """
        self._check_open()
        if self.refined:
            raise ResourceStateError("Octree topology is fixed after its initial decomposition")

        new_min, new_size, new_level, new_tris = [], [], [], []
        n_split = 0
        for box_min, size, level, tris in zip(self._leaf_min, self._leaf_size,
                                              self._leaf_level, self._leaf_tris):
            if not should_split(size, level, len(tris)):
                new_min.append(box_min)
                new_size.append(size)
                new_level.append(level)
                new_tris.append(tris)
                continue

            n_split += 1
            half = 0.5 * size
            for octant in range(8):
                offset = np.array([(octant >> 0) & 1, (octant >> 1) & 1, (octant >> 2) & 1]) * half
                child_min = box_min + offset
                new_min.append(child_min)
                new_size.append(half)
                new_level.append(level + 1)
                new_tris.append(self._triangles_in_box(tris, child_min, half))

        self._leaf_min = np.array(new_min)
        self._leaf_size = np.array(new_size)
        self._leaf_level = np.array(new_level, dtype=int)
        self._leaf_tris = new_tris
        return n_split

    def mark_refined(self) -> None:
        self.refined = True
        logger.debug(f"Octree finalised: {self.n_leaves} leaves, max level {self.max_level}")

    # ------------------------------------------------------------------ queries

    def find_nearest_surface_point(self, point) -> Tuple[np.ndarray, float, int, int]:
        """
        Nearest point on the surface.

        Returns:
            Tuple of (point, distance, triangle index, patch index)
        """
        self._check_open()
        point = np.asarray(point, dtype=float)

        box_max = self._leaf_min + self._leaf_size[:, None]
        delta = np.maximum(np.maximum(self._leaf_min - point, point - box_max), 0.0)
        box_dist = np.linalg.norm(delta, axis=1)

        best_point, best_dist, best_tri = None, np.inf, -1
        visited = set()
        for leaf in np.argsort(box_dist, kind="stable"):
            if box_dist[leaf] > best_dist:
                break
            tris = self._leaf_tris[leaf]
            if len(tris) == 0:
                continue
            tris = np.array([t for t in tris.tolist() if t not in visited], dtype=np.int64)
            if len(tris) == 0:
                continue
            visited.update(tris.tolist())

            closest = closest_points_on_triangles(
                point, self._tri_a[tris], self._tri_b[tris], self._tri_c[tris])
            dist = np.linalg.norm(closest - point, axis=1)
            i = int(np.argmin(dist))
            if dist[i] < best_dist:
                best_point, best_dist, best_tri = closest[i], float(dist[i]), int(tris[i])

        if best_tri < 0:
            raise StageError("Nearest surface point query found no triangles")
        return best_point, best_dist, best_tri, int(self._regions[best_tri])

    def find_nearest_surface_points(self, points) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Batched nearest point query.

        Returns:
            Tuple of (points (N, 3), distances (N,), patch indices (N,))
        """
        points = np.atleast_2d(np.asarray(points, dtype=float))
        nearest = np.empty_like(points)
        distances = np.empty(len(points))
        patches = np.empty(len(points), dtype=int)
        for i, point in enumerate(points):
            nearest[i], distances[i], _, patches[i] = self.find_nearest_surface_point(point)
        return nearest, distances, patches

    def is_inside(self, points) -> np.ndarray:
        """Containment test by ray parity against the closed surface"""
        self._check_open()
        crossings = count_ray_crossings(points, _RAY_DIRECTION,
                                        self._tri_a, self._tri_b, self._tri_c)
        return crossings % 2 == 1

    def _surface_features(self) -> None:
        if self._patch_edges is not None:
            return
        surface = self.surface
        edges = defaultdict(list)
        point_patches = defaultdict(set)
        for edge, tris in surface.edge_triangles().items():
            patches = {int(self._regions[t]) for t in tris}
            if len(patches) > 1:
                edges[frozenset(patches)].append(edge)
                for p in edge:
                    point_patches[p].update(patches)

        min_patches = DEFAULT_CONSTANTS['surface'].CORNER_MIN_PATCHES
        self._patch_edges = {
            key: np.array(value, dtype=np.int64) for key, value in edges.items()
        }
        self._corners = {
            p: frozenset(patches) for p, patches in point_patches.items()
            if len(patches) >= min_patches
        }

    def patch_edges(self) -> Dict[FrozenSet[int], np.ndarray]:
        """Surface edges between different patches, keyed by the patch pair"""
        self._check_open()
        self._surface_features()
        return self._patch_edges

    def corner_points(self) -> Dict[int, FrozenSet[int]]:
        """Surface points shared by three or more patches"""
        self._check_open()
        self._surface_features()
        return self._corners

    def find_nearest_edge_point(self, point, patches: Sequence[int]) -> Optional[Tuple[np.ndarray, float]]:
        """Nearest point on the surface edges separating the given patches"""
        self._check_open()
        wanted = frozenset(int(p) for p in patches)
        candidates = [edges for key, edges in self.patch_edges().items() if key <= wanted or wanted <= key]
        if not candidates:
            return None
        edges = np.concatenate(candidates)
        pts = self.surface.points
        closest, _ = closest_points_on_segments(point, pts[edges[:, 0]], pts[edges[:, 1]])
        dist = np.linalg.norm(closest - point, axis=1)
        i = int(np.argmin(dist))
        return closest[i], float(dist[i])

    def find_nearest_corner(self, point, patches: Sequence[int]) -> Optional[Tuple[np.ndarray, float]]:
        """Nearest surface corner shared by all the given patches"""
        self._check_open()
        wanted = frozenset(int(p) for p in patches)
        corners = [p for p, key in self.corner_points().items() if wanted <= key]
        if not corners:
            return None
        pts = self.surface.points[np.array(corners)]
        dist = np.linalg.norm(pts - point, axis=1)
        i = int(np.argmin(dist))
        return pts[i].copy(), float(dist[i])

    def close(self) -> None:
        """Release the octree; safe to call more than once"""
        if self.closed:
            return
        self._leaf_min = self._leaf_size = self._leaf_level = None
        self._leaf_tris = None
        self._tri_a = self._tri_b = self._tri_c = None
        self._tri_min = self._tri_max = None
        self._patch_edges = self._corners = None
        self.surface = None
        self.closed = True
        logger.debug("Released octree")


class OctreeCreator:
    """Refines a MeshOctree according to the meshDict cell sizes"""

    def __init__(self, octree: MeshOctree, mesh_dict):
        self.octree = octree
        self.mesh_dict = mesh_dict
        self.constants = DEFAULT_CONSTANTS['octree']

    def _target_size(self) -> float:
        max_cell_size = float(self.mesh_dict.lookup("maxCellSize"))
        return float(self.mesh_dict.get_or_default("boundaryCellSize", max_cell_size))

    def create_octree_boxes(self) -> None:
        """Coarse decomposition: refine boxes touching the surface to the boundary cell size"""
        target_level = min(self.octree.level_for_size(self._target_size()),
                           self.constants.MAX_OCTREE_LEVEL)

        while self.octree.refine(lambda size, level, n_tris: n_tris > 0 and level < target_level):
            pass

        self.octree.mark_refined()
        logger.info(f"Created octree boxes: {self.octree.n_leaves} leaves, "
                    f"boundary level {target_level}")

    def create_octree_with_refined_boundary(self, max_level: int, triangles_per_leaf: int) -> None:
        """Decomposition refined until boundary leaves hold few triangles"""
        target_level = min(self.octree.level_for_size(self._target_size()),
                           self.constants.MAX_OCTREE_LEVEL)
        max_level = min(max_level, self.constants.MAX_OCTREE_LEVEL)

        def should_split(size, level, n_tris):
            if n_tris == 0:
                return False
            return level < target_level or (n_tris > triangles_per_leaf and level < max_level)

        while self.octree.refine(should_split):
            pass

        self.octree.mark_refined()
        logger.info(f"Created octree with refined boundary: {self.octree.n_leaves} leaves, "
                    f"max level {self.octree.max_level}")
