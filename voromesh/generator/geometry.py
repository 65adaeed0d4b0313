"""
Surface geometry handling for the mesh generator.
Loads the input surface (STL through numpy-stl), reads optional feature
edges, summarises the surface for the mesh metadata and derives patches from
feature edges.
"""
import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
from stl import mesh as np_stl_mesh

from .constants import DEFAULT_CONSTANTS, DEFAULT_PATCH_TYPE
from .errors import MeshGenerationError, ResourceStateError
from ..utils import bounding_box, unique_rows, edge_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SurfacePatch:
    """Named group of surface triangles"""
    name: str
    type: str = DEFAULT_PATCH_TYPE


class TriSurface:
    """Immutable closed triangulated surface with patches and optional feature edges"""

    def __init__(self, points, triangles, regions=None,
                 patches: Optional[List[SurfacePatch]] = None,
                 feature_edges=None, name: str = "surface"):
        points = np.array(points, dtype=float).reshape(-1, 3)
        triangles = np.array(triangles, dtype=np.int64).reshape(-1, 3)
        if regions is None:
            regions = np.zeros(len(triangles), dtype=np.int64)
        regions = np.array(regions, dtype=np.int64).reshape(-1)
        if feature_edges is None:
            feature_edges = np.zeros((0, 2), dtype=np.int64)
        feature_edges = np.array(feature_edges, dtype=np.int64).reshape(-1, 2)

        if len(regions) != len(triangles):
            raise ValueError("One region index per triangle is required")
        if len(triangles) and (triangles.min() < 0 or triangles.max() >= len(points)):
            raise ValueError("Triangle references a point outside the point list")

        if patches is None:
            n_patches = int(regions.max()) + 1 if len(regions) else 1
            patches = [SurfacePatch(f"patch{i}") for i in range(n_patches)]

        for array in (points, triangles, regions, feature_edges):
            array.setflags(write=False)

        self.name = name
        self._points = points
        self._triangles = triangles
        self._regions = regions
        self._feature_edges = feature_edges
        self.patches = list(patches)
        self.closed = False

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TriSurface":
        """
        Load a surface from an ASCII or binary STL file.

        Every solid of a multi-solid STL becomes one patch. Feature edges are
        read from a sibling <stem>.eMesh file when it exists.
        """
        path = Path(path)
        if not path.exists():
            raise MeshGenerationError(f"Surface file not found: {path}")

        try:
            solids = list(np_stl_mesh.Mesh.from_multi_file(str(path), speedups=False))
        except Exception as e:
            raise MeshGenerationError(f"Could not read surface {path}: {e}")

        if not solids:
            raise MeshGenerationError(f"Surface {path} contains no triangles")

        vectors = []
        regions = []
        patches = []
        for index, solid in enumerate(solids):
            name = solid.name
            if isinstance(name, bytes):
                name = name.decode("utf-8", errors="replace")
            name = (name or "").strip() or f"patch{index}"
            patches.append(SurfacePatch(_unique_name(name, patches)))
            vectors.append(np.asarray(solid.vectors, dtype=float))
            regions.append(np.full(len(solid.vectors), index, dtype=np.int64))

        vertices = np.concatenate(vectors).reshape(-1, 3)
        diagonal = float(np.linalg.norm(vertices.max(axis=0) - vertices.min(axis=0))) or 1.0
        tolerance = DEFAULT_CONSTANTS['surface'].MERGE_TOLERANCE * diagonal
        points, inverse = unique_rows(vertices, tolerance)
        triangles = inverse.reshape(-1, 3)

        # Drop triangles collapsed by the merge
        valid = ((triangles[:, 0] != triangles[:, 1]) &
                 (triangles[:, 1] != triangles[:, 2]) &
                 (triangles[:, 0] != triangles[:, 2]))
        region_array = np.concatenate(regions)
        if not valid.all():
            logger.warning(f"Removed {np.count_nonzero(~valid)} degenerate triangles from {path.name}")

        feature_edges = None
        emesh_file = path.with_suffix(".eMesh")
        if emesh_file.exists():
            feature_edges = read_feature_edges(emesh_file, points, diagonal)

        surface = cls(points, triangles[valid], region_array[valid], patches,
                      feature_edges, name=path.stem)

        logger.info(f"Loaded surface {path.name}: {len(surface.points)} points, "
                    f"{len(surface.triangles)} triangles, {len(patches)} patch(es), "
                    f"{len(surface.feature_edges)} feature edges")
        return surface

    def _check_open(self) -> None:
        if self.closed:
            raise ResourceStateError(f"Surface '{self.name}' has already been released")

    @property
    def points(self) -> np.ndarray:
        self._check_open()
        return self._points

    @property
    def triangles(self) -> np.ndarray:
        self._check_open()
        return self._triangles

    @property
    def regions(self) -> np.ndarray:
        self._check_open()
        return self._regions

    @property
    def feature_edges(self) -> np.ndarray:
        self._check_open()
        return self._feature_edges

    @property
    def patch_names(self) -> List[str]:
        return [patch.name for patch in self.patches]

    def triangle_corners(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        tris = self.triangles
        pts = self.points
        return pts[tris[:, 0]], pts[tris[:, 1]], pts[tris[:, 2]]

    def edge_triangles(self) -> Dict[Tuple[int, int], List[int]]:
        """Triangles sharing each undirected edge"""
        edges = defaultdict(list)
        for tri_index, tri in enumerate(self.triangles.tolist()):
            for i in range(3):
                edges[edge_key(tri[i], tri[(i + 1) % 3])].append(tri_index)
        return edges

    def is_closed_manifold(self) -> bool:
        return all(len(tris) == 2 for tris in self.edge_triangles().values())

    def with_points(self, points: np.ndarray, name: Optional[str] = None) -> "TriSurface":
        """Copy of this surface with new point coordinates"""
        return TriSurface(points, self.triangles, self.regions, self.patches,
                          self.feature_edges, name=name or self.name)

    def close(self) -> None:
        """Release the surface arrays; safe to call more than once"""
        if self.closed:
            return
        self._points = None
        self._triangles = None
        self._regions = None
        self._feature_edges = None
        self.closed = True
        logger.debug(f"Released surface '{self.name}'")

    def __repr__(self) -> str:
        if self.closed:
            return f"TriSurface({self.name!r}, released)"
        return (f"TriSurface({self.name!r}, points={len(self._points)}, "
                f"triangles={len(self._triangles)}, patches={self.patch_names})")


def _unique_name(name: str, existing: List[SurfacePatch]) -> str:
    taken = {patch.name for patch in existing}
    if name not in taken:
        return name
    suffix = 1
    while f"{name}_{suffix}" in taken:
        suffix += 1
    return f"{name}_{suffix}"


_VECTOR_RE = re.compile(r"\(\s*([-+\d.eE]+)\s+([-+\d.eE]+)\s+([-+\d.eE]+)\s*\)")
_EDGE_RE = re.compile(r"\(\s*(\d+)\s+(\d+)\s*\)")


def read_feature_edges(emesh_file: Path, surface_points: np.ndarray,
                       diagonal: float) -> np.ndarray:
    """
    Read an OpenFOAM edge mesh (eMesh) and express its edges in surface point
    indices. Edges whose end points do not lie on surface points are ignored.
    """
    content = emesh_file.read_text()
    # Strip the FoamFile header and comments
    content = re.sub(r"/\*.*?\*/", "", content, flags=re.DOTALL)
    content = re.sub(r"//[^\n]*", "", content)
    content = re.sub(r"FoamFile\s*\{.*?\}", "", content, flags=re.DOTALL)

    edge_section = content
    points = []
    for match in _VECTOR_RE.finditer(content):
        points.append([float(match.group(i)) for i in range(1, 4)])
        edge_section = content[match.end():]
    edges = [(int(m.group(1)), int(m.group(2))) for m in _EDGE_RE.finditer(edge_section)]

    if not points or not edges:
        logger.warning(f"No feature edges found in {emesh_file.name}")
        return np.zeros((0, 2), dtype=np.int64)

    tolerance = DEFAULT_CONSTANTS['surface'].EMESH_MATCH_TOLERANCE * diagonal
    emesh_points = np.asarray(points)
    mapping = np.full(len(emesh_points), -1, dtype=np.int64)
    for i, point in enumerate(emesh_points):
        distances = np.linalg.norm(surface_points - point, axis=1)
        nearest = int(np.argmin(distances))
        if distances[nearest] <= tolerance:
            mapping[i] = nearest

    result = []
    for a, b in edges:
        if a >= len(mapping) or b >= len(mapping):
            continue
        if mapping[a] >= 0 and mapping[b] >= 0 and mapping[a] != mapping[b]:
            result.append(edge_key(int(mapping[a]), int(mapping[b])))

    unmatched = len(edges) - len(result)
    if unmatched:
        logger.warning(f"{unmatched} feature edge(s) in {emesh_file.name} do not match the surface")

    return np.array(sorted(set(result)), dtype=np.int64).reshape(-1, 2)


def surface_meta_data(surface: TriSurface) -> Dict:
    """Geometric summary of the surface stored with the mesh"""
    regions = surface.regions
    counts = np.bincount(regions, minlength=len(surface.patches)) if len(regions) else []
    a, b, c = surface.triangle_corners()
    area = 0.5 * np.linalg.norm(np.cross(b - a, c - a), axis=1).sum()

    return {
        "points": int(len(surface.points)),
        "triangles": int(len(surface.triangles)),
        "patches": {
            patch.name: {"type": patch.type, "triangles": int(counts[i])}
            for i, patch in enumerate(surface.patches)
        },
        "featureEdges": int(len(surface.feature_edges)),
        "boundingBox": bounding_box(surface.points),
        "surfaceArea": float(area),
        "closedManifold": surface.is_closed_manifold()
    }


class SurfacePatchManipulator:
    """Splits surface patches along feature edges"""

    def __init__(self, surface: TriSurface):
        self.surface = surface

    def _triangle_groups(self) -> np.ndarray:
        """Connected triangle groups not crossing feature edges or patch borders"""
        surface = self.surface
        features = {tuple(edge) for edge in surface.feature_edges.tolist()}
        regions = surface.regions

        parent = list(range(len(surface.triangles)))

        def find(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for edge, tris in surface.edge_triangles().items():
            if edge in features or len(tris) != 2:
                continue
            t0, t1 = tris
            if regions[t0] != regions[t1]:
                continue
            r0, r1 = find(t0), find(t1)
            if r0 != r1:
                parent[max(r0, r1)] = min(r0, r1)

        roots = np.array([find(i) for i in range(len(parent))], dtype=np.int64)
        return roots

    def surface_with_patches(self, mesh_dict=None) -> TriSurface:
        """
        Create a surface with one patch per feature-bounded region.

        When a meshDict is given, the derived patch definitions are written
        back to it (surfacePatches) and patch-keyed settings of the original
        patches are copied to every derived patch.
        """
        surface = self.surface
        roots = self._triangle_groups()

        # Stable patch numbering: groups ordered by original patch, then first triangle
        group_order = {}
        for tri_index in range(len(roots)):
            root = int(roots[tri_index])
            if root not in group_order:
                group_order[root] = (int(surface.regions[tri_index]), tri_index)

        groups_per_patch = defaultdict(list)
        for root, (region, first) in sorted(group_order.items(), key=lambda item: item[1]):
            groups_per_patch[region].append(root)

        # Patches that are not split keep their names
        kept = [surface.patches[region] for region, roots_in_patch in groups_per_patch.items()
                if len(roots_in_patch) == 1]

        new_patches = []
        root_to_patch = {}
        origin = {}
        for region in sorted(groups_per_patch):
            original = surface.patches[region]
            roots_in_patch = groups_per_patch[region]
            for i, root in enumerate(roots_in_patch):
                if len(roots_in_patch) == 1:
                    name = original.name
                else:
                    name = _unique_name(f"{original.name}_{i}", kept + new_patches)
                root_to_patch[root] = len(new_patches)
                new_patches.append(SurfacePatch(name, original.type))
                origin[name] = original.name

        new_regions = np.array([root_to_patch[int(r)] for r in roots], dtype=np.int64)
        result = TriSurface(surface.points, surface.triangles, new_regions, new_patches,
                            None, name=f"{surface.name}_patches")

        logger.info(f"Derived {len(new_patches)} patches from {len(surface.feature_edges)} "
                    f"feature edges ({len(surface.patches)} original patch(es))")

        if mesh_dict is not None:
            update_mesh_dict_patches(mesh_dict, new_patches, origin)

        return result


def _expand_patch_entries(section: Dict, origin: Dict[str, str]) -> None:
    """Copy entries keyed by an original patch name to each derived patch"""
    derived_by_origin = defaultdict(list)
    for new_name, old_name in origin.items():
        derived_by_origin[old_name].append(new_name)

    for old_name, new_names in derived_by_origin.items():
        if old_name not in section or new_names == [old_name]:
            continue
        entry = section.pop(old_name)
        for new_name in new_names:
            section.setdefault(new_name, dict(entry) if isinstance(entry, dict) else entry)


def update_mesh_dict_patches(mesh_dict, patches: List[SurfacePatch],
                             origin: Dict[str, str]) -> None:
    """Write derived patch definitions into the meshDict"""
    mesh_dict.set("surfacePatches", {
        patch.name: {"type": patch.type, "origin": origin[patch.name]} for patch in patches
    })

    if mesh_dict.is_dict("boundaryLayers"):
        layers = mesh_dict.sub_dict("boundaryLayers")
        if layers.is_dict("patchBoundaryLayers"):
            _expand_patch_entries(layers.read_if_present("patchBoundaryLayers"), origin)

    if mesh_dict.is_dict("renameBoundary"):
        rename = mesh_dict.sub_dict("renameBoundary")
        if rename.is_dict("newPatchNames"):
            _expand_patch_entries(rename.read_if_present("newPatchNames"), origin)
