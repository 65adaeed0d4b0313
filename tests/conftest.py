"""
Pytest configuration and shared fixtures for the voromesh tests.
"""
import pytest
import tempfile
import json
from pathlib import Path
import numpy as np

from voromesh.generator.config_manager import MeshDict
from voromesh.generator.geometry import TriSurface
from voromesh.generator.octree import MeshOctree, OctreeCreator
from voromesh.generator.volume_mesh import VolumeMesh


# Unit cube, two outward-facing triangles per side, one solid per side
CUBE_SOLIDS = {
    "xmin": [[(0, 0, 0), (0, 0, 1), (0, 1, 1)], [(0, 0, 0), (0, 1, 1), (0, 1, 0)]],
    "xmax": [[(1, 0, 0), (1, 1, 0), (1, 1, 1)], [(1, 0, 0), (1, 1, 1), (1, 0, 1)]],
    "ymin": [[(0, 0, 0), (1, 0, 0), (1, 0, 1)], [(0, 0, 0), (1, 0, 1), (0, 0, 1)]],
    "ymax": [[(0, 1, 0), (0, 1, 1), (1, 1, 1)], [(0, 1, 0), (1, 1, 1), (1, 1, 0)]],
    "zmin": [[(0, 0, 0), (0, 1, 0), (1, 1, 0)], [(0, 0, 0), (1, 1, 0), (1, 0, 0)]],
    "zmax": [[(0, 0, 1), (1, 0, 1), (1, 1, 1)], [(0, 0, 1), (1, 1, 1), (0, 1, 1)]],
}


def _stl_solid(name, triangles):
    lines = [f"solid {name}"]
    for tri in triangles:
        a, b, c = (np.array(v, dtype=float) for v in tri)
        normal = np.cross(b - a, c - a)
        normal /= np.linalg.norm(normal)
        lines.append(f"  facet normal {normal[0]:.6f} {normal[1]:.6f} {normal[2]:.6f}")
        lines.append("    outer loop")
        for vertex in (a, b, c):
            lines.append(f"      vertex {vertex[0]:.6f} {vertex[1]:.6f} {vertex[2]:.6f}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {name}")
    return "\n".join(lines) + "\n"


def write_cube_stl(path, solids=None):
    """Write the unit cube as a multi-solid ASCII STL"""
    solids = solids or CUBE_SOLIDS
    path.write_text("".join(_stl_solid(name, tris) for name, tris in solids.items()))
    return path


def make_box_mesh(n=2, length=1.0):
    """Hexahedral n x n x n box mesh with one patch per side"""
    m = n + 1
    spacing = length / n

    def node(i, j, k):
        return (i * m + j) * m + k

    grid = np.arange(m) * spacing
    points = np.array([[x, y, z] for x in grid for y in grid for z in grid])

    def plane_face(axis, i, j, k):
        if axis == 0:
            return (node(i + 1, j, k), node(i + 1, j + 1, k),
                    node(i + 1, j + 1, k + 1), node(i + 1, j, k + 1))
        if axis == 1:
            return (node(i, j + 1, k), node(i, j + 1, k + 1),
                    node(i + 1, j + 1, k + 1), node(i + 1, j + 1, k))
        return (node(i, j, k + 1), node(i + 1, j, k + 1),
                node(i + 1, j + 1, k + 1), node(i, j + 1, k + 1))

    def cell(i, j, k):
        if 0 <= i < n and 0 <= j < n and 0 <= k < n:
            return (i * n + j) * n + k
        return -1

    faces, owner, neighbour, face_patch = [], [], [], []
    for i in range(n):
        for j in range(n):
            for k in range(n):
                for axis in range(3):
                    step = [0, 0, 0]
                    step[axis] = 1
                    upper = cell(i + step[0], j + step[1], k + step[2])
                    faces.append(plane_face(axis, i, j, k))
                    owner.append(cell(i, j, k))
                    neighbour.append(upper)
                    face_patch.append(2 * axis + 1 if upper < 0 else -1)
                    if cell(i - step[0], j - step[1], k - step[2]) < 0:
                        lower = plane_face(axis, i - step[0], j - step[1], k - step[2])
                        faces.append(tuple(reversed(lower)))
                        owner.append(cell(i, j, k))
                        neighbour.append(-1)
                        face_patch.append(2 * axis)

    return VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                     list(CUBE_SOLIDS))


@pytest.fixture
def temp_dir():
    """Create temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def sample_mesh_dict():
    """Minimal meshDict for the unit cube"""
    return {
        "surfaceFile": "cube.stl",
        "maxCellSize": 0.25
    }


@pytest.fixture
def cube_stl(temp_dir):
    """Unit cube STL with six named solids"""
    return write_cube_stl(temp_dir / "cube.stl")


@pytest.fixture
def cube_case(temp_dir, cube_stl, sample_mesh_dict):
    """Case directory with cube.stl and system/meshDict.json"""
    system_dir = temp_dir / "system"
    system_dir.mkdir()
    with open(system_dir / "meshDict.json", "w") as f:
        json.dump(sample_mesh_dict, f, indent=2)
    return temp_dir


@pytest.fixture
def box_mesh():
    """2 x 2 x 2 hexahedral unit box with patches xmin ... zmax"""
    return make_box_mesh(2)


@pytest.fixture
def box_mesh_factory():
    return make_box_mesh


@pytest.fixture
def cube_solids():
    """Triangles of the unit cube keyed by side name"""
    return {name: list(tris) for name, tris in CUBE_SOLIDS.items()}


@pytest.fixture
def stl_writer():
    return write_cube_stl


@pytest.fixture
def cube_surface(cube_stl):
    """Unit cube surface with patches xmin ... zmax"""
    surface = TriSurface.from_file(cube_stl)
    yield surface
    surface.close()


@pytest.fixture
def cube_octree(cube_surface, sample_mesh_dict):
    """Octree over the unit cube refined to maxCellSize"""
    octree = MeshOctree(cube_surface)
    OctreeCreator(octree, MeshDict(sample_mesh_dict)).create_octree_boxes()
    yield octree
    octree.close()
