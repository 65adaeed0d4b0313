"""
Boundary layer insertion and refinement.

A layer is inserted by duplicating the points of the selected boundary faces,
moving the duplicates into the mesh, and filling the gap with one prism cell
per boundary face. Refinement splits those prisms into graded sublayers.
"""
import logging
import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .constants import DEFAULT_CONSTANTS, BOUNDARY_LAYER_CELLS
from .errors import StageError
from .volume_mesh import VolumeMesh
from ..utils import polygon_edges, edge_key

logger = logging.getLogger(__name__)


class BoundaryLayers:
    """Inserts one layer of prism cells at the selected patches"""

    def __init__(self, mesh: VolumeMesh):
        self.mesh = mesh
        self.constants = DEFAULT_CONSTANTS['layers']

    def add_layer_for_all_patches(self) -> int:
        return self._add_layer(range(len(self.mesh.patches)))

    def add_layer_for_patches(self, patch_names: Iterable[str]) -> int:
        """Insert a layer at the named patches; names may be regular expressions"""
        wanted = []
        for i, name in enumerate(self.mesh.patch_names()):
            if any(_matches(pattern, name) for pattern in patch_names):
                wanted.append(i)
        unknown = [p for p in patch_names
                   if not any(_matches(p, name) for name in self.mesh.patch_names())]
        if unknown:
            logger.warning(f"No boundary patches match {unknown}; no layer added there")
        return self._add_layer(wanted)

    def _add_layer(self, patch_ids) -> int:
        """
        Returns:
            Number of layer cells created
        """
        mesh = self.mesh
        patch_ids = set(patch_ids)
        labels = mesh.face_patch_labels()
        layered = [f for f in mesh.boundary_faces() if labels[f] in patch_ids]
        if not layered:
            logger.info("No boundary faces selected for layer insertion")
            return 0

        points, faces, owner, neighbour, face_patch, names, types = mesh.to_face_list()
        n_points = len(points)
        n_cells = mesh.n_cells
        centres = mesh.cell_centres

        # One new point per point of the layered faces, moved towards the owner cells
        owner_centres = defaultdict(list)
        for f in layered:
            for p in faces[f]:
                owner_centres[p].append(centres[owner[f]])

        ratio = self.constants.INSERTION_THICKNESS_RATIO
        prime = {}
        new_points = []
        for p in sorted(owner_centres):
            target = np.mean(owner_centres[p], axis=0)
            prime[p] = n_points + len(new_points)
            new_points.append(points[p] + ratio * (target - points[p]))

        layer_cell = {f: n_cells + i for i, f in enumerate(layered)}

        out_faces, out_owner, out_neighbour, out_patch = [], [], [], []

        def add_face(face, own, nei, patch):
            out_faces.append(tuple(face))
            out_owner.append(own)
            out_neighbour.append(nei)
            out_patch.append(patch)

        for f, face in enumerate(faces):
            if f in layer_cell:
                add_face(face, layer_cell[f], -1, face_patch[f])
                add_face([prime[p] for p in face], owner[f], layer_cell[f], -1)
            else:
                add_face([prime.get(p, p) for p in face], owner[f], neighbour[f], face_patch[f])

        # Side faces between neighbouring layer cells or on the layer border
        boundary_edge_faces = defaultdict(list)
        for f in mesh.boundary_faces():
            for a, b in polygon_edges(faces[f]):
                boundary_edge_faces[edge_key(a, b)].append(f)

        edge_cell = {}
        for f in layered:
            for a, b in polygon_edges(faces[f]):
                edge_cell[(a, b)] = layer_cell[f]

        done = set()
        for f in layered:
            for a, b in polygon_edges(faces[f]):
                key = edge_key(a, b)
                if key in done:
                    continue
                done.add(key)
                side = (a, prime[a], prime[b], b)
                if (b, a) in edge_cell:
                    add_face(side, layer_cell[f], edge_cell[(b, a)], -1)
                else:
                    others = [g for g in boundary_edge_faces[key] if g != f]
                    if not others:
                        raise StageError(f"Boundary edge {key} has no adjacent face")
                    add_face(side, layer_cell[f], -1, face_patch[others[0]])

        cell_sets = {name: set(cells) for name, cells in mesh.cell_sets.items()}
        cell_sets.setdefault(BOUNDARY_LAYER_CELLS, set()).update(layer_cell.values())

        layer_edges = np.array([(p, q) for p, q in prime.items()], dtype=np.int64).reshape(-1, 2)
        if len(mesh.layer_edges):
            layer_edges = np.vstack([mesh.layer_edges, layer_edges])

        rebuilt = VolumeMesh.from_face_list(
            np.vstack([points, np.array(new_points)]), out_faces, out_owner, out_neighbour,
            out_patch, names, types, cell_sets, mesh.locked_points, layer_edges)
        mesh.replace_with(rebuilt)

        logger.info(f"Inserted boundary layer: {len(layered)} cells at "
                    f"{len(patch_ids)} patch(es)")
        return len(layered)


def _matches(pattern: str, name: str) -> bool:
    if pattern == name:
        return True
    try:
        return re.fullmatch(pattern, name) is not None
    except re.error:
        return False


class RefineBoundaryLayers:
    """
    Splits inserted layer cells into graded sublayers.

    Settings come from the boundaryLayers section: nLayers, thicknessRatio and
    maxFirstLayerThickness, optionally overridden per patch in
    patchBoundaryLayers. Layer cells connected through shared layer points
    are split into the same number of sublayers (the largest requested).
    """

    def __init__(self, mesh: VolumeMesh, mesh_dict):
        self.mesh = mesh
        self.mesh_dict = mesh_dict
        self.constants = DEFAULT_CONSTANTS['layers']

    def _settings(self) -> Tuple[Dict, Dict[str, Dict]]:
        layers = self.mesh_dict.sub_dict("boundaryLayers")
        global_settings = {
            "nLayers": int(layers.get_or_default("nLayers", 1)),
            "thicknessRatio": float(layers.get_or_default("thicknessRatio",
                                                          self.constants.THICKNESS_RATIO_DEFAULT)),
            "maxFirstLayerThickness": layers.get_or_default("maxFirstLayerThickness", None)
        }
        per_patch = {}
        if layers.is_dict("patchBoundaryLayers"):
            patch_layers = layers.sub_dict("patchBoundaryLayers")
            for key in patch_layers.toc():
                entry = patch_layers.sub_dict(key)
                per_patch[key] = {
                    "nLayers": int(entry.get_or_default("nLayers", global_settings["nLayers"])),
                    "thicknessRatio": float(entry.get_or_default(
                        "thicknessRatio", global_settings["thicknessRatio"])),
                    "maxFirstLayerThickness": entry.get_or_default(
                        "maxFirstLayerThickness", global_settings["maxFirstLayerThickness"])
                }
        return global_settings, per_patch

    def _patch_settings(self, patch_name: Optional[str], global_settings, per_patch) -> Dict:
        if patch_name is not None:
            for key, settings in per_patch.items():
                if _matches(key, patch_name):
                    return settings
        return global_settings

    def _layer_cells(self, head_to_tail: Dict[int, int]) -> Dict[int, Tuple[int, int]]:
        """Outer and inner cap face of every recognised layer cell"""
        mesh = self.mesh
        result = {}
        for cell in sorted(mesh.cell_sets.get(BOUNDARY_LAYER_CELLS, set())):
            if cell >= mesh.n_cells:
                continue
            cell_faces = mesh.cells[cell]
            by_points = {frozenset(mesh.faces[f]): f for f in cell_faces}
            for f in cell_faces:
                face = mesh.faces[f]
                if not all(p in head_to_tail for p in face):
                    continue
                inner = by_points.get(frozenset(head_to_tail[p] for p in face))
                if inner is not None:
                    result[cell] = (f, inner)
                    break
        return result

    @staticmethod
    def _fractions(n_layers: int, ratio: float, length: float,
                   max_first: Optional[float]) -> np.ndarray:
        """Cumulative positions of the sublayer interfaces from the wall, in [0, 1]"""
        widths = ratio ** np.arange(n_layers, dtype=float)
        fractions = np.concatenate([[0.0], np.cumsum(widths) / widths.sum()])
        if max_first is not None and length > 0 and fractions[1] * length > float(max_first):
            first = float(max_first) / length
            rest = widths[1:] / widths[1:].sum() * (1.0 - first)
            fractions = np.concatenate([[0.0, first], first + np.cumsum(rest)])
        return fractions

    def refine_layers(self) -> List[int]:
        """
        Split the layer cells into sublayers.

        Returns:
            Sorted labels of all points of the boundary layer cells
        """
        mesh = self.mesh
        if not len(mesh.layer_edges):
            logger.info("No boundary layers to refine")
            return []

        head_to_tail = {int(o): int(i) for o, i in mesh.layer_edges.tolist()}
        layer_cells = self._layer_cells(head_to_tail)
        if not layer_cells:
            logger.info("No boundary layer cells found for refinement")
            return []

        global_settings, per_patch = self._settings()
        labels = mesh.face_patch_labels()
        names = mesh.patch_names()

        # Requested settings per cell, from the patch of its outer face
        cell_settings = {}
        for cell, (outer, _) in layer_cells.items():
            patch_name = names[labels[outer]] if labels[outer] >= 0 else None
            cell_settings[cell] = self._patch_settings(patch_name, global_settings, per_patch)

        # Cells sharing layer points must agree on the sublayer count
        parent = {cell: cell for cell in layer_cells}

        def find(c):
            while parent[c] != c:
                parent[c] = parent[parent[c]]
                c = parent[c]
            return c

        head_cells = defaultdict(list)
        for cell, (outer, _) in layer_cells.items():
            for p in mesh.faces[outer]:
                head_cells[p].append(cell)
        for cells in head_cells.values():
            for other in cells[1:]:
                r0, r1 = find(cells[0]), find(other)
                if r0 != r1:
                    parent[max(r0, r1)] = min(r0, r1)

        component_settings = {}
        mismatched = set()
        for cell in sorted(layer_cells):
            root = find(cell)
            settings = cell_settings[cell]
            current = component_settings.get(root)
            if current is not None and settings["nLayers"] != current["nLayers"]:
                mismatched.add(root)
            if current is None or settings["nLayers"] > current["nLayers"]:
                component_settings[root] = settings
        for root in sorted(mismatched):
            logger.warning(f"Boundary layer patches sharing points request different layer "
                           f"counts; using {component_settings[root]['nLayers']}")
        settings_of = {cell: component_settings[find(cell)] for cell in layer_cells}

        split_cells = {c: s for c, s in settings_of.items() if s["nLayers"] > 1}
        if not split_cells:
            logger.info("Boundary layers need no refinement")
            return self._layer_points()

        points, faces, owner, neighbour, face_patch, patch_names, patch_types = mesh.to_face_list()
        new_points = [points]
        n_total = len(points)

        # Point chains from the wall inwards for every split column
        chains: Dict[int, List[int]] = {}
        for cell, settings in split_cells.items():
            outer, _ = layer_cells[cell]
            for head in faces[outer]:
                if head in chains:
                    continue
                tail = head_to_tail[head]
                length = float(np.linalg.norm(points[tail] - points[head]))
                fractions = self._fractions(settings["nLayers"], settings["thicknessRatio"],
                                            length, settings["maxFirstLayerThickness"])
                inner = fractions[1:-1]
                coordinates = points[head] + inner[:, None] * (points[tail] - points[head])
                labels_new = list(range(n_total, n_total + len(inner)))
                n_total += len(inner)
                new_points.append(coordinates)
                chains[head] = [head] + labels_new + [tail]

        # Sub-cell labels: sublayer 0 keeps the original cell label
        next_cell = mesh.n_cells
        sub_cells = {}
        for cell in sorted(split_cells):
            n = split_cells[cell]["nLayers"]
            sub_cells[cell] = [cell] + list(range(next_cell, next_cell + n - 1))
            next_cell += n - 1

        cap_faces = {}
        for cell in split_cells:
            outer, inner = layer_cells[cell]
            cap_faces[outer] = ("outer", cell)
            cap_faces[inner] = ("inner", cell)

        def sub_cell(cell, k):
            return sub_cells[cell][k] if cell in sub_cells else cell

        out_faces, out_owner, out_neighbour, out_patch = [], [], [], []

        def add_face(face, own, nei, patch):
            out_faces.append(tuple(face))
            out_owner.append(own)
            out_neighbour.append(nei)
            out_patch.append(patch)

        for f, face in enumerate(faces):
            o, nb = int(owner[f]), int(neighbour[f])
            cap = cap_faces.get(f)
            if cap is not None and cap[0] == "inner":
                last = sub_cells[cap[1]][-1]
                o = last if o == cap[1] else o
                nb = last if nb == cap[1] else nb
                add_face(face, o, nb, face_patch[f])
                continue
            if cap is not None:
                add_face(face, o, nb, face_patch[f])
                continue

            if (o in sub_cells or nb in sub_cells) and len(face) == 4:
                start = _side_face_start(face, head_to_tail, chains)
                if start is not None:
                    rotated = face[start:] + face[:start]
                    x, y = rotated[0], rotated[3]
                    for k in range(len(chains[x]) - 1):
                        add_face((chains[x][k], chains[x][k + 1], chains[y][k + 1], chains[y][k]),
                                 sub_cell(o, k), sub_cell(nb, k) if nb >= 0 else -1,
                                 face_patch[f])
                    continue

            add_face(_insert_chain_points(face, head_to_tail, chains), o, nb, face_patch[f])

        # Interfaces between consecutive sublayers
        for cell in sorted(split_cells):
            outer, _ = layer_cells[cell]
            cap = faces[outer] if owner[outer] == cell else tuple(reversed(faces[outer]))
            cells = sub_cells[cell]
            for k in range(len(cells) - 1):
                add_face([chains[p][k + 1] for p in cap], cells[k + 1], cells[k], -1)

        cell_sets = {name: set(cells) for name, cells in mesh.cell_sets.items()}
        for cells in sub_cells.values():
            cell_sets[BOUNDARY_LAYER_CELLS].update(cells)

        layer_edges = [(o, i) for o, i in mesh.layer_edges.tolist() if o not in chains]
        for chain in chains.values():
            layer_edges.extend(zip(chain[:-1], chain[1:]))

        rebuilt = VolumeMesh.from_face_list(
            np.vstack(new_points), out_faces, out_owner, out_neighbour, out_patch,
            patch_names, patch_types, cell_sets, mesh.locked_points,
            np.array(layer_edges, dtype=np.int64).reshape(-1, 2))
        mesh.replace_with(rebuilt)

        logger.info(f"Refined {len(split_cells)} boundary layer cells into "
                    f"{sum(len(c) for c in sub_cells.values())} sublayer cells")
        return self._layer_points()

    def _layer_points(self) -> List[int]:
        mesh = self.mesh
        cells = mesh.cell_sets.get(BOUNDARY_LAYER_CELLS, set())
        return sorted({p for c in cells if c < mesh.n_cells for p in mesh.cell_points(c)})


def _side_face_start(face, head_to_tail, chains) -> Optional[int]:
    """Index i with face[i] a split column head followed by its tail"""
    n = len(face)
    for i in range(n):
        head = face[i]
        if head in chains and face[(i + 1) % n] == head_to_tail[head]:
            other = face[(i + 3) % n]
            if other in chains and face[(i + 2) % n] == head_to_tail[other]:
                return i
    return None


def _insert_chain_points(face, head_to_tail, chains) -> Tuple[int, ...]:
    """Add the intermediate sublayer points on split column edges of a face"""
    result = []
    n = len(face)
    for i in range(n):
        a, b = face[i], face[(i + 1) % n]
        result.append(a)
        if a in chains and head_to_tail[a] == b:
            result.extend(chains[a][1:-1])
        elif b in chains and head_to_tail[b] == a:
            result.extend(reversed(chains[b][1:-1]))
    return tuple(result)

