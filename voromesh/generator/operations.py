"""
Stage operations invoked by the mesh generation pipeline.

Every operation works in place on the shared VolumeMesh, except
create_template which returns the initial mesh. Operations that change the
topology rebuild the mesh through VolumeMesh.from_face_list and hand the
result over with replace_with, so the mesh is valid again when they return.
"""
import logging
import re
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Sequence

import numpy as np

from .boundary_layers import BoundaryLayers, RefineBoundaryLayers
from .constants import DEFAULT_CONSTANTS, DEFAULT_PATCH_NAME, DEFAULT_PATCH_TYPE
from .errors import StageError, ResourceStateError
from .optimizer import MeshOptimizer, MeshSurfaceOptimizer
from .volume_mesh import VolumeMesh
from ..utils import polygon_edges, edge_key

logger = logging.getLogger(__name__)


def _require_octree(octree, operation: str) -> None:
    if octree is None or octree.closed:
        raise ResourceStateError(f"{operation} requires a live octree")


class StageOperations:
    """Default geometric collaborators of VoronoiMeshGenerator"""

    def __init__(self, constants: Optional[Dict] = None):
        self.constants = constants or DEFAULT_CONSTANTS

    # ------------------------------------------------------------------ templateGeneration

    def create_template(self, octree, mesh_dict) -> VolumeMesh:
        """
        Hexahedral template mesh on the octree grid at maxCellSize.

        Cells are kept when their centre lies inside the surface. All boundary
        faces go to the provisional patch defaultFaces.
        """
        _require_octree(octree, "Template generation")
        max_cell_size = float(mesh_dict.lookup("maxCellSize"))
        level = min(octree.level_for_size(max_cell_size),
                    self.constants['octree'].MAX_OCTREE_LEVEL)
        n = 2 ** level
        size = octree.box_size(level)

        index = np.arange(n)
        i, j, k = np.meshgrid(index, index, index, indexing="ij")
        centres = octree.root_min + (np.stack([i, j, k], axis=-1).reshape(-1, 3) + 0.5) * size
        inside = octree.is_inside(centres).reshape(n, n, n)
        if not inside.any():
            raise StageError("No template cell lies inside the surface; "
                             "check maxCellSize against the surface size")

        cell_id = np.full((n, n, n), -1, dtype=np.int64)
        cell_id[inside] = np.arange(int(np.count_nonzero(inside)))

        m = n + 1
        node = lambda a, b, c: (a * m + b) * m + c
        nodes = np.arange(m)
        ni, nj, nk = np.meshgrid(nodes, nodes, nodes, indexing="ij")
        points = octree.root_min + np.stack([ni, nj, nk], axis=-1).reshape(-1, 3) * size

        def plane_face(axis, a, b, c):
            # Face on the positive side of cell (a, b, c), normal along +axis
            if axis == 0:
                return (node(a + 1, b, c), node(a + 1, b + 1, c),
                        node(a + 1, b + 1, c + 1), node(a + 1, b, c + 1))
            if axis == 1:
                return (node(a, b + 1, c), node(a, b + 1, c + 1),
                        node(a + 1, b + 1, c + 1), node(a + 1, b + 1, c))
            return (node(a, b, c + 1), node(a + 1, b, c + 1),
                    node(a + 1, b + 1, c + 1), node(a, b + 1, c + 1))

        def cell_at(a, b, c):
            if 0 <= a < n and 0 <= b < n and 0 <= c < n:
                return int(cell_id[a, b, c])
            return -1

        faces, owner, neighbour = [], [], []
        for a, b, c in zip(*np.nonzero(inside)):
            a, b, c = int(a), int(b), int(c)
            cell = int(cell_id[a, b, c])
            for axis in range(3):
                step = [0, 0, 0]
                step[axis] = 1
                upper = cell_at(a + step[0], b + step[1], c + step[2])
                lower = cell_at(a - step[0], b - step[1], c - step[2])
                face = plane_face(axis, a, b, c)
                faces.append(face)
                owner.append(cell)
                neighbour.append(upper)
                if lower < 0:
                    lower_face = plane_face(axis, a - step[0], b - step[1], c - step[2])
                    faces.append(tuple(reversed(lower_face)))
                    owner.append(cell)
                    neighbour.append(-1)

        face_patch = [0 if nb < 0 else -1 for nb in neighbour]
        mesh = VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                         [DEFAULT_PATCH_NAME], [DEFAULT_PATCH_TYPE])
        logger.info(f"Created template mesh: {mesh.n_cells} cells at level {level} "
                    f"(cell size {size:.6g})")
        return mesh

    # ------------------------------------------------------------------ surfaceTopology

    @staticmethod
    def _merge_faces(faces: Sequence[Sequence[int]]) -> Optional[tuple]:
        """Merge faces into one loop by cancelling opposite edges; None if impossible"""
        directed = Counter()
        for face in faces:
            for a, b in polygon_edges(face):
                if directed[(b, a)]:
                    directed[(b, a)] -= 1
                else:
                    directed[(a, b)] += 1
        remaining = [edge for edge, count in directed.items() for _ in range(count)]
        if len(remaining) < 3:
            return None

        following = {}
        for a, b in remaining:
            if a in following:
                return None
            following[a] = b

        start = min(following)
        loop = [start]
        current = following[start]
        while current != start:
            if current not in following or len(loop) > len(remaining):
                return None
            loop.append(current)
            current = following[current]
        if len(loop) != len(remaining):
            return None
        return tuple(loop)

    def morph_surface(self, mesh: VolumeMesh) -> int:
        """
        Reduce every cell to at most one boundary face.

        Boundary faces of a cell are merged into a single face; cells whose
        boundary faces do not form one loop are removed. Repeats until no cell
        has more than one boundary face.

        Returns:
            Number of cells removed
        """
        removed_total = 0
        for iteration in range(self.constants['morph'].MAX_MORPH_ITERATIONS):
            points, faces, owner, neighbour, face_patch, names, types = mesh.to_face_list()

            cell_boundary = defaultdict(list)
            cell_n_internal = Counter()
            for f in range(len(faces)):
                if neighbour[f] < 0:
                    cell_boundary[int(owner[f])].append(f)
                else:
                    cell_n_internal[int(owner[f])] += 1
                    cell_n_internal[int(neighbour[f])] += 1

            multi = {c: fs for c, fs in cell_boundary.items() if len(fs) > 1}
            if not multi:
                logger.info(f"Surface morphing finished after {iteration} iteration(s), "
                            f"{removed_total} cell(s) removed")
                return removed_total

            merged = {}
            removed = set()
            for cell, boundary_faces in multi.items():
                loop = self._merge_faces([faces[f] for f in boundary_faces])
                if loop is None or cell_n_internal[cell] + 1 < 4:
                    removed.add(cell)
                else:
                    merged[cell] = loop

            new_faces, new_owner, new_neighbour, new_patch = [], [], [], []
            for f, face in enumerate(faces):
                o, nb = int(owner[f]), int(neighbour[f])
                if nb < 0:
                    if o in removed or o in merged:
                        continue
                    new_faces.append(face)
                    new_owner.append(o)
                    new_neighbour.append(-1)
                    new_patch.append(int(face_patch[f]))
                elif o in removed and nb in removed:
                    continue
                elif o in removed:
                    new_faces.append(tuple(reversed(face)))
                    new_owner.append(nb)
                    new_neighbour.append(-1)
                    new_patch.append(int(face_patch[cell_boundary[o][0]]) if cell_boundary[o] else 0)
                elif nb in removed:
                    new_faces.append(face)
                    new_owner.append(o)
                    new_neighbour.append(-1)
                    new_patch.append(int(face_patch[cell_boundary[nb][0]]) if cell_boundary[nb] else 0)
                else:
                    new_faces.append(face)
                    new_owner.append(o)
                    new_neighbour.append(nb)
                    new_patch.append(-1)

            for cell, loop in merged.items():
                new_faces.append(loop)
                new_owner.append(cell)
                new_neighbour.append(-1)
                new_patch.append(int(face_patch[multi[cell][0]]))

            if not new_faces:
                raise StageError("Surface morphing removed every cell of the mesh")

            rebuilt = VolumeMesh.from_face_list(points, new_faces, new_owner, new_neighbour,
                                                new_patch, names, types, mesh.cell_sets,
                                                mesh.locked_points, mesh.layer_edges)
            mesh.replace_with(rebuilt)
            removed_total += len(removed)
            logger.debug(f"Morph iteration {iteration}: merged {len(merged)} cells, "
                         f"removed {len(removed)} cells")

        raise StageError("Surface morphing did not converge")

    # ------------------------------------------------------------------ surfaceProjection

    def map_mesh_to_surface(self, mesh: VolumeMesh, octree, pre_map: bool = True) -> int:
        """
        Move boundary points onto the surface, then untangle the boundary.

        The pre-map step places each point at the average of its own and its
        neighbours' projections so that neighbouring points do not collapse
        onto the same spot. Untangling always runs.

        Returns:
            Number of points mapped
        """
        _require_octree(octree, "Surface mapping")
        mapping = self.constants['mapping']
        locked = mesh.locked_points
        labels = np.array([p for p in mesh.boundary_points.tolist() if p not in locked],
                          dtype=np.int64)

        if pre_map and len(labels):
            neighbours = mesh.boundary_point_neighbours()
            position = {int(p): i for i, p in enumerate(labels)}
            for _ in range(mapping.PRE_MAP_ITERATIONS):
                projected, _, _ = octree.find_nearest_surface_points(mesh.points[labels])
                points = mesh.points.copy()
                for i, p in enumerate(labels.tolist()):
                    around = [projected[position[q]] for q in neighbours[p] if q in position]
                    average = np.mean(around + [projected[i]], axis=0)
                    points[p] += mapping.PRE_MAP_RELAXATION * (average - points[p])
                mesh.set_points(points)

        if len(labels):
            projected, distances, _ = octree.find_nearest_surface_points(mesh.points[labels])
            points = mesh.points.copy()
            points[labels] = projected
            mesh.set_points(points)
            logger.info(f"Mapped {len(labels)} boundary points to the surface "
                        f"(max distance {float(distances.max()):.6g})")

        MeshSurfaceOptimizer(mesh, octree).untangle_surface()
        return int(len(labels))

    # ------------------------------------------------------------------ patchAssignment

    def extract_patches(self, mesh: VolumeMesh, octree) -> Dict[str, int]:
        """
        Assign every boundary face to the surface patch nearest to its centre.

        Faces none of whose edge neighbours share their patch are re-labelled
        with the most common neighbour patch.

        Returns:
            Face count per patch
        """
        _require_octree(octree, "Patch extraction")
        surface_patches = octree.surface.patches
        boundary = list(mesh.boundary_faces())
        if not boundary:
            raise StageError("Mesh has no boundary faces to assign")

        _, _, nearest = octree.find_nearest_surface_points(mesh.face_centres[boundary])
        labels = {f: int(p) for f, p in zip(boundary, nearest.tolist())}

        edge_faces = defaultdict(list)
        for f in boundary:
            for a, b in polygon_edges(mesh.faces[f]):
                edge_faces[edge_key(a, b)].append(f)
        face_neighbours = defaultdict(set)
        for shared in edge_faces.values():
            for f in shared:
                face_neighbours[f].update(g for g in shared if g != f)

        for _ in range(self.constants['mapping'].ISOLATED_FACE_ITERATIONS):
            changed = 0
            for f in boundary:
                around = [labels[g] for g in face_neighbours[f]]
                if around and labels[f] not in around:
                    labels[f] = Counter(around).most_common(1)[0][0]
                    changed += 1
            if not changed:
                break

        points, faces, owner, neighbour, face_patch, _, _ = mesh.to_face_list()
        for f, patch in labels.items():
            face_patch[f] = patch

        rebuilt = VolumeMesh.from_face_list(
            points, faces, owner, neighbour, face_patch,
            [p.name for p in surface_patches], [p.type for p in surface_patches],
            mesh.cell_sets, mesh.locked_points, mesh.layer_edges)
        mesh.replace_with(rebuilt)

        counts = {patch.name: patch.size for patch in mesh.patches}
        logger.info(f"Assigned boundary faces to {len(counts)} patches: {counts}")
        return counts

    # ------------------------------------------------------------------ edgeExtraction

    def map_edges_and_corners(self, mesh: VolumeMesh, octree) -> int:
        """
        Snap boundary points on patch borders to the surface features.

        Points touching three or more patches go to the nearest surface corner
        shared by those patches (one point per corner), points touching two
        patches to the nearest point on the surface edge between them. A snap
        is skipped when it would bring the point too close to a neighbour.

        Returns:
            Number of points snapped
        """
        _require_octree(octree, "Edge extraction")
        point_patches = mesh.boundary_point_patches()
        neighbours = mesh.boundary_point_neighbours()
        locked = mesh.locked_points
        points = mesh.points.copy()

        corner_claims = {}
        edge_points = []
        for p, patches in sorted(point_patches.items()):
            if p in locked or len(patches) < 2:
                continue
            if len(patches) >= 3:
                corner = octree.find_nearest_corner(points[p], sorted(patches))
                if corner is not None:
                    key = tuple(np.round(corner[0], 12))
                    claim = corner_claims.get(key)
                    if claim is None or corner[1] < claim[1]:
                        if claim is not None:
                            edge_points.append(claim[0])
                        corner_claims[key] = (p, corner[1], corner[0])
                    else:
                        edge_points.append(p)
                    continue
            edge_points.append(p)

        targets = {}
        for p, _, position in corner_claims.values():
            targets[p] = position
        for p in edge_points:
            nearest = octree.find_nearest_edge_point(points[p], sorted(point_patches[p]))
            if nearest is not None:
                targets[p] = nearest[0]

        snapped = 0
        for p in sorted(targets):
            target = targets[p]
            too_close = any(
                np.linalg.norm(target - points[q]) < 0.1 * np.linalg.norm(points[p] - points[q])
                for q in neighbours[p])
            if too_close:
                continue
            points[p] = target
            snapped += 1

        mesh.set_points(points)
        logger.info(f"Mapped {snapped} of {len(targets)} feature points to edges and corners "
                    f"({len(corner_claims)} corners)")
        return snapped

    def optimise_mesh_surface(self, mesh: VolumeMesh, octree) -> None:
        optimizer = MeshSurfaceOptimizer(mesh, octree)
        optimizer.optimise_surface()
        optimizer.untangle_surface()

    # ------------------------------------------------------------------ boundary layers

    def add_layer_for_all_patches(self, mesh: VolumeMesh) -> int:
        return BoundaryLayers(mesh).add_layer_for_all_patches()

    def add_layer_for_patches(self, mesh: VolumeMesh, patch_names: Sequence[str]) -> int:
        return BoundaryLayers(mesh).add_layer_for_patches(patch_names)

    def refine_boundary_layers(self, mesh: VolumeMesh, mesh_dict) -> List[int]:
        """Split layers into sublayers; returns the points inside the layers"""
        return RefineBoundaryLayers(mesh, mesh_dict).refine_layers()

    # ------------------------------------------------------------------ optimisation

    def surface_optimizer(self, mesh: VolumeMesh, octree) -> MeshSurfaceOptimizer:
        return MeshSurfaceOptimizer(mesh, octree)

    def mesh_optimizer(self, mesh: VolumeMesh) -> MeshOptimizer:
        return MeshOptimizer(mesh)

    # ------------------------------------------------------------------ finalisation

    def renumber_mesh(self, mesh: VolumeMesh) -> None:
        mesh.renumber_mesh()

    def rename_boundary_patches(self, mesh: VolumeMesh, mesh_dict) -> List[str]:
        """
        Apply the renameBoundary rules.

        newPatchNames maps patch names or regular expressions to
        {newName, type}; unmatched patches take defaultName and defaultType
        when given. Patches that end up with the same name are merged.

        Returns:
            Final patch names
        """
        if not mesh_dict.is_dict("renameBoundary"):
            logger.debug("No renameBoundary rules, patch names kept")
            return mesh.patch_names()

        rename = mesh_dict.sub_dict("renameBoundary")
        default_name = rename.read_if_present("defaultName")
        default_type = rename.read_if_present("defaultType")
        rules = rename.read_if_present("newPatchNames") or {}

        new_names, new_types = [], []
        for patch in mesh.patches:
            rule = rules.get(patch.name)
            if rule is None:
                for pattern, candidate in rules.items():
                    try:
                        if re.fullmatch(pattern, patch.name):
                            rule = candidate
                            break
                    except re.error:
                        logger.warning(f"Invalid patch name pattern '{pattern}' in renameBoundary")
            if rule is not None:
                new_names.append(rule.get("newName", patch.name))
                new_types.append(rule.get("type", patch.type))
            else:
                new_names.append(default_name or patch.name)
                new_types.append(default_type or patch.type)

        final_names, final_types, index = [], [], {}
        mapping = []
        for name, patch_type in zip(new_names, new_types):
            if name not in index:
                index[name] = len(final_names)
                final_names.append(name)
                final_types.append(patch_type)
            mapping.append(index[name])

        points, faces, owner, neighbour, face_patch, _, _ = mesh.to_face_list()
        mapping = np.array(mapping, dtype=np.int64)
        face_patch = np.where(face_patch >= 0, mapping[np.maximum(face_patch, 0)], -1)

        rebuilt = VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                            final_names, final_types, mesh.cell_sets,
                                            mesh.locked_points, mesh.layer_edges)
        mesh.replace_with(rebuilt)
        logger.info(f"Renamed boundary patches: {final_names}")
        return final_names
