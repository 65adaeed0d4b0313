"""
Polyhedral volume mesh shared by all pipeline steps.

Layout follows the OpenFOAM polyMesh: internal faces first, ordered by owner,
then boundary faces grouped per patch. Face normals point out of the owner
cell. Derived addressing and geometry are computed on demand and dropped
whenever points or topology change.
"""
import copy
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from .constants import DEFAULT_PATCH_TYPE
from .errors import StageError
from ..utils import face_centre_and_area, edge_key, polygon_edges

logger = logging.getLogger(__name__)


@dataclass
class BoundaryPatch:
    """Contiguous range of boundary faces"""
    name: str
    type: str
    start: int
    size: int

    def face_range(self) -> range:
        return range(self.start, self.start + self.size)


class VolumeMesh:
    """Cells, faces, points and boundary patches of the mesh being generated"""

    def __init__(self, points, faces: Sequence[Sequence[int]], owner, neighbour,
                 patches: List[BoundaryPatch],
                 cell_sets: Optional[Dict[str, Set[int]]] = None,
                 metadata: Optional[Dict] = None):
        self.points = np.array(points, dtype=float).reshape(-1, 3)
        self.faces: List[Tuple[int, ...]] = [tuple(int(p) for p in face) for face in faces]
        self.owner = np.array(owner, dtype=np.int64).reshape(-1)
        self.neighbour = np.array(neighbour, dtype=np.int64).reshape(-1)
        self.patches = list(patches)
        self.cell_sets: Dict[str, Set[int]] = {k: set(v) for k, v in (cell_sets or {}).items()}
        self.locked_points: Set[int] = set()
        # (outer, inner) point pairs of extruded boundary layers
        self.layer_edges = np.zeros((0, 2), dtype=np.int64)
        self.metadata: Dict = dict(metadata or {})

        if len(self.owner) != len(self.faces):
            raise StageError(f"Mesh has {len(self.faces)} faces but {len(self.owner)} owners")

        self._cells = None
        self._point_faces = None
        self._point_cells = None
        self._boundary_points = None
        self._face_patch = None
        self._face_centres = None
        self._face_areas = None
        self._cell_centres = None
        self._cell_volumes = None

    # ------------------------------------------------------------------ construction

    @classmethod
    def empty(cls) -> "VolumeMesh":
        return cls(np.zeros((0, 3)), [], [], [], [])

    @classmethod
    def from_face_list(cls, points, faces, owner, neighbour, face_patch,
                       patch_names: Sequence[str], patch_types: Optional[Sequence[str]] = None,
                       cell_sets: Optional[Dict[str, Set[int]]] = None,
                       locked_points: Optional[Set[int]] = None,
                       layer_edges=None,
                       metadata: Optional[Dict] = None,
                       point_order: str = "keep") -> "VolumeMesh":
        """
        Build a mesh from an unordered face list.

        Args:
            points: Point coordinates; unused points are dropped
            faces: Point labels of every face
            owner: Owner cell of every face
            neighbour: Neighbour cell of every face, -1 for boundary faces
            face_patch: Patch index of every boundary face, ignored for internal faces
            patch_names: Names of the patches (empty patches are kept)
            patch_types: Patch types, defaults to "patch"
            cell_sets: Named cell sets in the input cell numbering
            locked_points: Locked point labels in the input point numbering
            layer_edges: (outer, inner) boundary layer point pairs in the input numbering
            point_order: "keep" keeps the input point order, "first_use" orders
                points by their first appearance in the sorted faces

        Returns:
            New VolumeMesh with compact cell and point numbering
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        owner = np.asarray(owner, dtype=np.int64)
        neighbour = np.asarray(neighbour, dtype=np.int64)
        face_patch = np.asarray(face_patch, dtype=np.int64)
        patch_types = list(patch_types) if patch_types is not None else [DEFAULT_PATCH_TYPE] * len(patch_names)

        if not (len(faces) == len(owner) == len(neighbour) == len(face_patch)):
            raise StageError("Inconsistent face list lengths")

        # Compact cell numbering, keeping the relative order
        used_cells = np.unique(np.concatenate([owner, neighbour[neighbour >= 0]])) if len(owner) else np.zeros(0, dtype=np.int64)
        if len(used_cells) and used_cells[0] < 0:
            raise StageError("Face without a valid owner cell")
        cell_map = {int(c): i for i, c in enumerate(used_cells)}

        internal = []
        boundary = []
        for f, face in enumerate(faces):
            o = cell_map[int(owner[f])]
            if neighbour[f] >= 0:
                n = cell_map[int(neighbour[f])]
                if o == n:
                    raise StageError(f"Face {f} has the same owner and neighbour cell {o}")
                if o > n:
                    face = tuple(reversed(face))
                    o, n = n, o
                internal.append((o, n, f, tuple(face)))
            else:
                patch = int(face_patch[f])
                if not 0 <= patch < len(patch_names):
                    raise StageError(f"Boundary face {f} has no valid patch ({patch})")
                boundary.append((patch, f, o, tuple(face)))

        internal.sort(key=lambda item: (item[0], item[1], item[2]))
        boundary.sort(key=lambda item: (item[0], item[1]))

        new_faces = [item[3] for item in internal] + [item[3] for item in boundary]
        new_owner = [item[0] for item in internal] + [item[2] for item in boundary]
        new_neighbour = [item[1] for item in internal]

        patch_sizes = np.bincount([item[0] for item in boundary], minlength=len(patch_names)) \
            if boundary else np.zeros(len(patch_names), dtype=int)
        patches = []
        start = len(internal)
        for i, name in enumerate(patch_names):
            patches.append(BoundaryPatch(name, patch_types[i], start, int(patch_sizes[i])))
            start += int(patch_sizes[i])

        # Compact point numbering
        if point_order == "first_use":
            order = []
            seen = set()
            for face in new_faces:
                for p in face:
                    if p not in seen:
                        seen.add(p)
                        order.append(p)
            used_points = np.array(order, dtype=np.int64)
        else:
            used_points = np.unique(np.fromiter((p for face in new_faces for p in face), dtype=np.int64)) \
                if new_faces else np.zeros(0, dtype=np.int64)
        point_map = np.full(len(points), -1, dtype=np.int64)
        point_map[used_points] = np.arange(len(used_points))
        new_faces = [tuple(int(point_map[p]) for p in face) for face in new_faces]

        new_sets = {}
        for name, cells in (cell_sets or {}).items():
            new_sets[name] = {cell_map[c] for c in cells if c in cell_map}

        mesh = cls(points[used_points], new_faces, new_owner, new_neighbour, patches,
                   new_sets, metadata)
        if locked_points:
            mesh.locked_points = {int(point_map[p]) for p in locked_points
                                  if 0 <= p < len(point_map) and point_map[p] >= 0}
        if layer_edges is not None and len(layer_edges):
            pairs = point_map[np.asarray(layer_edges, dtype=np.int64).reshape(-1, 2)]
            mesh.layer_edges = pairs[np.all(pairs >= 0, axis=1)]
        return mesh

    def to_face_list(self):
        """
        Unordered representation understood by from_face_list.

        Returns:
            Tuple of (points, faces, owner, neighbour with -1 for boundary faces,
            face_patch with -1 for internal faces, patch names, patch types)
        """
        neighbour = np.full(self.n_faces, -1, dtype=np.int64)
        neighbour[:self.n_internal_faces] = self.neighbour
        return (self.points.copy(), list(self.faces), self.owner.copy(), neighbour,
                self.face_patch_labels().copy(), [p.name for p in self.patches],
                [p.type for p in self.patches])

    def copy(self) -> "VolumeMesh":
        mesh = VolumeMesh(self.points.copy(), list(self.faces), self.owner.copy(),
                          self.neighbour.copy(), copy.deepcopy(self.patches),
                          self.cell_sets, copy.deepcopy(self.metadata))
        mesh.locked_points = set(self.locked_points)
        mesh.layer_edges = self.layer_edges.copy()
        return mesh

    def replace_with(self, other: "VolumeMesh") -> None:
        """Take over the topology and geometry of another mesh, in place"""
        self.points = other.points
        self.faces = other.faces
        self.owner = other.owner
        self.neighbour = other.neighbour
        self.patches = other.patches
        self.cell_sets = other.cell_sets
        self.locked_points = other.locked_points
        self.layer_edges = other.layer_edges
        if other.metadata:
            self.metadata.update(other.metadata)
        self.clear_addressing_data()

    # ------------------------------------------------------------------ sizes

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    @property
    def n_internal_faces(self) -> int:
        return len(self.neighbour)

    @property
    def n_cells(self) -> int:
        if not len(self.owner):
            return 0
        n = int(self.owner.max()) + 1
        if len(self.neighbour):
            n = max(n, int(self.neighbour.max()) + 1)
        return n

    def is_empty(self) -> bool:
        return self.n_cells == 0

    def patch_index(self, name: str) -> int:
        for i, patch in enumerate(self.patches):
            if patch.name == name:
                return i
        raise KeyError(name)

    def patch_names(self) -> List[str]:
        return [patch.name for patch in self.patches]

    # ------------------------------------------------------------------ mutation

    def set_points(self, points) -> None:
        points = np.asarray(points, dtype=float)
        if points.shape != self.points.shape:
            raise StageError(f"Point array shape {points.shape} does not match the mesh {self.points.shape}")
        self.points = points.copy()
        self.clear_geometry_data()

    def lock_points(self, labels) -> None:
        self.locked_points.update(int(p) for p in labels)

    def unlock_points(self) -> None:
        self.locked_points.clear()

    def clear_geometry_data(self) -> None:
        self._face_centres = None
        self._face_areas = None
        self._cell_centres = None
        self._cell_volumes = None

    def clear_addressing_data(self) -> None:
        """Drop every cached addressing and geometry array"""
        self._cells = None
        self._point_faces = None
        self._point_cells = None
        self._boundary_points = None
        self._face_patch = None
        self.clear_geometry_data()

    # ------------------------------------------------------------------ addressing

    @property
    def cells(self) -> List[List[int]]:
        """Face labels of every cell"""
        if self._cells is None:
            cells = [[] for _ in range(self.n_cells)]
            for f, o in enumerate(self.owner.tolist()):
                cells[o].append(f)
            for f, n in enumerate(self.neighbour.tolist()):
                cells[n].append(f)
            self._cells = cells
        return self._cells

    @property
    def point_faces(self) -> List[List[int]]:
        if self._point_faces is None:
            point_faces = [[] for _ in range(self.n_points)]
            for f, face in enumerate(self.faces):
                for p in face:
                    point_faces[p].append(f)
            self._point_faces = point_faces
        return self._point_faces

    @property
    def point_cells(self) -> List[List[int]]:
        if self._point_cells is None:
            point_cells = []
            n_internal = self.n_internal_faces
            for faces in self.point_faces:
                cells = set()
                for f in faces:
                    cells.add(int(self.owner[f]))
                    if f < n_internal:
                        cells.add(int(self.neighbour[f]))
                point_cells.append(sorted(cells))
            self._point_cells = point_cells
        return self._point_cells

    def face_patch_labels(self) -> np.ndarray:
        """Patch index per face, -1 for internal faces"""
        if self._face_patch is None:
            labels = np.full(self.n_faces, -1, dtype=np.int64)
            for i, patch in enumerate(self.patches):
                labels[patch.start:patch.start + patch.size] = i
            self._face_patch = labels
        return self._face_patch

    @property
    def boundary_points(self) -> np.ndarray:
        if self._boundary_points is None:
            labels = {p for face in self.faces[self.n_internal_faces:] for p in face}
            self._boundary_points = np.array(sorted(labels), dtype=np.int64)
        return self._boundary_points

    def boundary_faces(self) -> range:
        return range(self.n_internal_faces, self.n_faces)

    def boundary_point_patches(self) -> Dict[int, Set[int]]:
        """Patches touching each boundary point"""
        labels = self.face_patch_labels()
        result = defaultdict(set)
        for f in self.boundary_faces():
            for p in self.faces[f]:
                result[p].add(int(labels[f]))
        return result

    def boundary_point_neighbours(self) -> Dict[int, Set[int]]:
        """Boundary points connected to each boundary point by a boundary edge"""
        result = defaultdict(set)
        for f in self.boundary_faces():
            for a, b in polygon_edges(self.faces[f]):
                result[a].add(b)
                result[b].add(a)
        return result

    def cell_points(self, cell: int) -> List[int]:
        return sorted({p for f in self.cells[cell] for p in self.faces[f]})

    # ------------------------------------------------------------------ geometry

    def _calc_face_geometry(self) -> None:
        centres = np.zeros((self.n_faces, 3))
        areas = np.zeros((self.n_faces, 3))
        for f, face in enumerate(self.faces):
            centres[f], areas[f] = face_centre_and_area(self.points[list(face)])
        self._face_centres = centres
        self._face_areas = areas

    @property
    def face_centres(self) -> np.ndarray:
        if self._face_centres is None:
            self._calc_face_geometry()
        return self._face_centres

    @property
    def face_areas(self) -> np.ndarray:
        """Face area vectors, pointing out of the owner cell"""
        if self._face_areas is None:
            self._calc_face_geometry()
        return self._face_areas

    def _calc_cell_geometry(self) -> None:
        n_cells = self.n_cells
        fc = self.face_centres
        sf = self.face_areas
        n_internal = self.n_internal_faces
        owner = self.owner
        neighbour = self.neighbour

        counts = np.bincount(owner, minlength=n_cells) + np.bincount(neighbour, minlength=n_cells)
        estimate = np.zeros((n_cells, 3))
        np.add.at(estimate, owner, fc)
        np.add.at(estimate, neighbour, fc[:n_internal])
        estimate /= np.maximum(counts, 1)[:, None]

        # Pyramid decomposition about the estimated centre
        pyr_own = np.einsum('ij,ij->i', sf, fc - estimate[owner]) / 3.0
        pyr_nei = np.einsum('ij,ij->i', sf[:n_internal], estimate[neighbour] - fc[:n_internal]) / 3.0
        ctr_own = 0.75 * fc + 0.25 * estimate[owner]
        ctr_nei = 0.75 * fc[:n_internal] + 0.25 * estimate[neighbour]

        volumes = np.zeros(n_cells)
        np.add.at(volumes, owner, pyr_own)
        np.add.at(volumes, neighbour, pyr_nei)

        moments = np.zeros((n_cells, 3))
        np.add.at(moments, owner, pyr_own[:, None] * ctr_own)
        np.add.at(moments, neighbour, pyr_nei[:, None] * ctr_nei)

        safe = np.abs(volumes) > 1e-300
        centres = estimate.copy()
        centres[safe] = moments[safe] / volumes[safe][:, None]

        self._cell_volumes = volumes
        self._cell_centres = centres

    @property
    def cell_centres(self) -> np.ndarray:
        if self._cell_centres is None:
            self._calc_cell_geometry()
        return self._cell_centres

    @property
    def cell_volumes(self) -> np.ndarray:
        if self._cell_volumes is None:
            self._calc_cell_geometry()
        return self._cell_volumes

    def face_non_orthogonality(self) -> np.ndarray:
        """Angle in degrees between face normal and the owner-neighbour (or owner-face) vector"""
        n_internal = self.n_internal_faces
        cc = self.cell_centres
        sf = self.face_areas
        delta = np.empty_like(sf)
        delta[:n_internal] = cc[self.neighbour] - cc[self.owner[:n_internal]]
        delta[n_internal:] = self.face_centres[n_internal:] - cc[self.owner[n_internal:]]

        norms = np.linalg.norm(sf, axis=1) * np.linalg.norm(delta, axis=1)
        cosine = np.einsum('ij,ij->i', sf, delta) / np.where(norms > 0, norms, 1.0)
        return np.degrees(np.arccos(np.clip(cosine, -1.0, 1.0)))

    def check_geometry(self) -> Dict:
        """Basic geometric quality summary"""
        if self.is_empty():
            return {"cells": 0, "negative_volume_cells": 0, "max_non_orthogonality": 0.0,
                    "min_volume": 0.0, "total_volume": 0.0}
        volumes = self.cell_volumes
        non_ortho = self.face_non_orthogonality()
        return {
            "cells": self.n_cells,
            "negative_volume_cells": int(np.count_nonzero(volumes <= 0)),
            "max_non_orthogonality": float(non_ortho.max()) if len(non_ortho) else 0.0,
            "min_volume": float(volumes.min()),
            "total_volume": float(volumes.sum())
        }

    # ------------------------------------------------------------------ topology checks

    def check_topology(self) -> List[str]:
        """
        Topological validity checks.

        Returns:
            List of human readable problems, empty when the mesh is valid
        """
        problems = []
        n_faces = self.n_faces
        n_internal = self.n_internal_faces
        n_cells = self.n_cells

        if n_cells == 0:
            return ["Mesh has no cells"]

        for f, face in enumerate(self.faces):
            if len(face) < 3:
                problems.append(f"Face {f} has fewer than 3 points")
            elif len(set(face)) != len(face):
                problems.append(f"Face {f} has repeated points")
            elif min(face) < 0 or max(face) >= self.n_points:
                problems.append(f"Face {f} references missing points")

        if len(self.owner) and self.owner.min() < 0:
            problems.append("Faces without an owner cell")
        if n_internal and np.any(self.owner[:n_internal] == self.neighbour):
            problems.append("Internal faces with identical owner and neighbour")

        # Patches must tile the boundary faces exactly, in order
        expected_start = n_internal
        for patch in self.patches:
            if patch.start != expected_start or patch.size < 0:
                problems.append(f"Patch {patch.name} starts at {patch.start}, expected {expected_start}")
            expected_start = patch.start + patch.size
        if expected_start != n_faces:
            problems.append(f"Patches cover {expected_start - n_internal} of "
                            f"{n_faces - n_internal} boundary faces")
        if len({patch.name for patch in self.patches}) != len(self.patches):
            problems.append("Duplicate patch names")

        # Every cell must be closed
        for cell, faces in enumerate(self.cells):
            if len(faces) < 4:
                problems.append(f"Cell {cell} has only {len(faces)} faces")
                continue
            edge_count = defaultdict(int)
            for f in faces:
                for a, b in polygon_edges(self.faces[f]):
                    edge_count[edge_key(a, b)] += 1
            if any(count != 2 for count in edge_count.values()):
                problems.append(f"Cell {cell} is not closed")

        # Boundary surface must be a closed manifold
        boundary_edges = defaultdict(int)
        for f in range(n_internal, n_faces):
            for a, b in polygon_edges(self.faces[f]):
                boundary_edges[edge_key(a, b)] += 1
        bad_edges = sum(1 for count in boundary_edges.values() if count != 2)
        if bad_edges:
            problems.append(f"{bad_edges} non-manifold or open boundary edges")

        return problems

    def is_valid(self) -> bool:
        return not self.check_topology()

    # ------------------------------------------------------------------ renumbering

    def renumber_mesh(self) -> None:
        """Reverse Cuthill-McKee cell ordering, upper-triangular faces, points by first use"""
        n_cells = self.n_cells
        if n_cells == 0:
            return

        adjacency = [[] for _ in range(n_cells)]
        for o, n in zip(self.owner[:self.n_internal_faces].tolist(), self.neighbour.tolist()):
            adjacency[o].append(n)
            adjacency[n].append(o)
        degree = [len(a) for a in adjacency]

        order = []
        visited = [False] * n_cells
        for start in sorted(range(n_cells), key=lambda c: (degree[c], c)):
            if visited[start]:
                continue
            visited[start] = True
            queue = deque([start])
            while queue:
                cell = queue.popleft()
                order.append(cell)
                for nei in sorted(adjacency[cell], key=lambda c: (degree[c], c)):
                    if not visited[nei]:
                        visited[nei] = True
                        queue.append(nei)
        order.reverse()

        new_label = np.empty(n_cells, dtype=np.int64)
        new_label[np.array(order)] = np.arange(n_cells)

        points, faces, owner, neighbour, face_patch, names, types = self.to_face_list()
        owner = new_label[owner]
        neighbour = np.where(neighbour >= 0, new_label[np.maximum(neighbour, 0)], -1)
        cell_sets = {name: {int(new_label[c]) for c in cells} for name, cells in self.cell_sets.items()}

        renumbered = VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                               names, types, cell_sets, self.locked_points,
                                               self.layer_edges, point_order="first_use")
        self.replace_with(renumbered)
        logger.info(f"Renumbered mesh: {self.n_cells} cells, {self.n_faces} faces, {self.n_points} points")

    def summary(self) -> Dict:
        return {
            "points": self.n_points,
            "faces": self.n_faces,
            "internal_faces": self.n_internal_faces,
            "cells": self.n_cells,
            "patches": {patch.name: patch.size for patch in self.patches}
        }

    def __repr__(self) -> str:
        return (f"VolumeMesh(cells={self.n_cells}, faces={self.n_faces}, "
                f"points={self.n_points}, patches={self.patch_names()})")
