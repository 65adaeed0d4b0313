"""
Unit tests for the stage operations.
"""
from unittest.mock import MagicMock, patch

import pytest
import numpy as np

from voromesh.generator.config_manager import MeshDict
from voromesh.generator.constants import DEFAULT_PATCH_NAME
from voromesh.generator.errors import ResourceStateError, StageError
from voromesh.generator.operations import StageOperations
from voromesh.generator.volume_mesh import VolumeMesh


def point_index(mesh, coordinates):
    matches = np.flatnonzero(np.all(np.isclose(mesh.points, coordinates), axis=1))
    assert len(matches) == 1
    return int(matches[0])


def move_point(mesh, label, position):
    points = mesh.points.copy()
    points[label] = position
    mesh.set_points(points)


def single_patch(mesh):
    """Same mesh with every boundary face in defaultFaces"""
    points, faces, owner, neighbour, face_patch, _, _ = mesh.to_face_list()
    face_patch = np.where(neighbour < 0, 0, -1)
    return VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                     [DEFAULT_PATCH_NAME])


@pytest.fixture
def operations():
    return StageOperations()


class TestTemplateGeneration:
    """Test suite for the template mesh"""

    def test_template_of_cube(self, operations, cube_octree, sample_mesh_dict):
        """Test the template fills the cube with octree-sized hexahedra"""
        mesh = operations.create_template(cube_octree, MeshDict(sample_mesh_dict))

        assert mesh.n_cells == 512
        assert mesh.is_valid()
        assert mesh.patch_names() == [DEFAULT_PATCH_NAME]
        assert mesh.patches[0].size == 6 * 64
        assert np.allclose(mesh.cell_volumes, cube_octree.box_size(3) ** 3)

    def test_no_cell_inside(self, operations, sample_mesh_dict):
        """Test a template without inside cells is a stage failure"""
        octree = MagicMock(closed=False)
        octree.level_for_size.return_value = 1
        octree.box_size.return_value = 0.5
        octree.root_min = np.zeros(3)
        octree.is_inside.side_effect = lambda centres: np.zeros(len(centres), dtype=bool)

        with pytest.raises(StageError, match="inside the surface"):
            operations.create_template(octree, MeshDict(sample_mesh_dict))

    def test_requires_octree(self, operations, sample_mesh_dict):
        """Test the template cannot be built without an octree"""
        with pytest.raises(ResourceStateError):
            operations.create_template(None, MeshDict(sample_mesh_dict))


class TestSurfaceTopology:
    """Test suite for surface morphing"""

    def test_merge_faces(self):
        """Test merging faces that share edges"""
        merged = StageOperations._merge_faces([(0, 1, 4, 3), (1, 2, 5, 4)])
        assert merged == (0, 1, 2, 5, 4, 3)

        # Faces without a common edge do not form one loop
        assert StageOperations._merge_faces([(0, 1, 2), (3, 4, 5)]) is None

    def test_morph_box(self, operations, box_mesh):
        """Test corner cells get one merged boundary face each"""
        removed = operations.morph_surface(box_mesh)

        assert removed == 0
        assert box_mesh.n_cells == 8
        assert box_mesh.is_valid()
        # The eight cube corners are no longer used by any face
        assert box_mesh.n_points == 19
        assert box_mesh.n_faces - box_mesh.n_internal_faces == 8
        assert all(len(box_mesh.faces[f]) == 6 for f in box_mesh.boundary_faces())

    def test_morph_finer_box(self, operations, box_mesh_factory):
        """Test corner and edge cells of a 3x3x3 box"""
        mesh = box_mesh_factory(3)
        removed = operations.morph_surface(mesh)

        assert removed == 0
        assert mesh.n_points == 56
        assert mesh.is_valid()
        assert mesh.n_faces - mesh.n_internal_faces == 8 + 12 + 6

    def test_morph_keeps_single_face_cells(self, operations, box_mesh_factory):
        """Test a mesh without multi-face cells is unchanged"""
        mesh = box_mesh_factory(3)
        operations.morph_surface(mesh)
        faces = list(mesh.faces)

        assert operations.morph_surface(mesh) == 0
        assert mesh.faces == faces

    def test_morph_removes_everything(self, operations, box_mesh_factory):
        """Test a single hexahedron cannot be morphed"""
        with pytest.raises(StageError, match="removed every cell"):
            operations.morph_surface(box_mesh_factory(1))


class TestSurfaceProjection:
    """Test suite for mapping the boundary onto the surface"""

    def test_map_without_pre_map(self, operations, box_mesh, cube_octree):
        """Test points already on the surface stay put"""
        before = box_mesh.points.copy()

        mapped = operations.map_mesh_to_surface(box_mesh, cube_octree, pre_map=False)

        assert mapped == 26
        assert np.allclose(box_mesh.points, before)

    def test_map_offset_points(self, operations, box_mesh, cube_octree):
        """Test boundary points off the surface are projected"""
        label = point_index(box_mesh, [0.5, 0.5, 1.0])
        move_point(box_mesh, label, [0.5, 0.5, 1.2])

        operations.map_mesh_to_surface(box_mesh, cube_octree, pre_map=False)

        assert np.allclose(box_mesh.points[label], [0.5, 0.5, 1.0])

    def test_map_with_pre_map(self, operations, box_mesh, cube_octree):
        """Test the pre-mapped boundary still lies on the surface"""
        mapped = operations.map_mesh_to_surface(box_mesh, cube_octree)

        assert mapped == 26
        assert box_mesh.is_valid()
        _, distances, _ = cube_octree.find_nearest_surface_points(
            box_mesh.points[box_mesh.boundary_points])
        assert distances.max() < 0.05

    def test_locked_points_not_mapped(self, operations, box_mesh, cube_octree):
        """Test locked points keep their position"""
        label = point_index(box_mesh, [0.5, 0.5, 1.0])
        move_point(box_mesh, label, [0.5, 0.5, 1.2])
        box_mesh.lock_points([label])

        assert operations.map_mesh_to_surface(box_mesh, cube_octree, pre_map=False) == 25
        assert np.allclose(box_mesh.points[label], [0.5, 0.5, 1.2])


class TestPatchAssignment:
    """Test suite for patch extraction"""

    def test_extract_patches(self, operations, box_mesh, cube_octree):
        """Test boundary faces take the nearest surface patch"""
        mesh = single_patch(box_mesh)

        counts = operations.extract_patches(mesh, cube_octree)

        assert counts == {"xmin": 4, "xmax": 4, "ymin": 4, "ymax": 4, "zmin": 4, "zmax": 4}
        assert mesh.is_valid()
        zmax = mesh.patches[mesh.patch_index("zmax")]
        assert np.allclose(mesh.face_centres[list(zmax.face_range()), 2], 1.0)

    def test_isolated_face_relabelled(self, operations, box_mesh, cube_octree):
        """Test a face with no same-patch neighbour joins its neighbours"""
        mesh = single_patch(box_mesh)
        nearest = cube_octree.find_nearest_surface_points

        def mislabel(queries):
            points, distances, patches = nearest(queries)
            # The zmax face touching xmin and ymin claims xmax
            corner_face = np.all(np.isclose(queries, [0.25, 0.25, 1.0]), axis=1)
            patches = np.where(corner_face, 1, patches)
            return points, distances, patches

        with patch.object(cube_octree, "find_nearest_surface_points", side_effect=mislabel):
            counts = operations.extract_patches(mesh, cube_octree)

        assert counts["zmax"] == 4
        assert counts["xmax"] == 4

    def test_requires_octree(self, operations, box_mesh):
        """Test patch extraction needs a live octree"""
        with pytest.raises(ResourceStateError):
            operations.extract_patches(box_mesh, None)


class TestEdgeExtraction:
    """Test suite for feature edge and corner snapping"""

    def test_box_features(self, operations, box_mesh, cube_octree):
        """Test corners and edge points of the box are snapped in place"""
        before = box_mesh.points.copy()

        snapped = operations.map_edges_and_corners(box_mesh, cube_octree)

        assert snapped == 8 + 12
        assert np.allclose(box_mesh.points, before)

    def test_edge_point_snapped_back(self, operations, box_mesh, cube_octree):
        """Test a displaced edge point returns to the surface edge"""
        label = point_index(box_mesh, [0.5, 0.0, 0.0])
        move_point(box_mesh, label, [0.45, 0.05, 0.05])

        operations.map_edges_and_corners(box_mesh, cube_octree)

        assert np.allclose(box_mesh.points[label], [0.45, 0.0, 0.0])

    def test_corner_snapped_back(self, operations, box_mesh, cube_octree):
        """Test a displaced corner point returns to the surface corner"""
        label = point_index(box_mesh, [1.0, 1.0, 1.0])
        move_point(box_mesh, label, [0.95, 0.9, 1.05])

        operations.map_edges_and_corners(box_mesh, cube_octree)

        assert np.allclose(box_mesh.points[label], [1.0, 1.0, 1.0])


class TestReplaceBoundaries:
    """Test suite for patch renaming"""

    def test_rename_rules(self, operations, box_mesh):
        """Test exact names, patterns and defaults with merging"""
        mesh_dict = MeshDict({"renameBoundary": {
            "defaultName": "walls",
            "defaultType": "wall",
            "newPatchNames": {
                "x.*": {"newName": "sides", "type": "wall"},
                "zmax": {"newName": "top"},
            },
        }})

        names = operations.rename_boundary_patches(box_mesh, mesh_dict)

        assert names == ["sides", "walls", "top"]
        assert [patch.size for patch in box_mesh.patches] == [8, 12, 4]
        assert [patch.type for patch in box_mesh.patches] == ["wall", "wall", "patch"]
        assert box_mesh.is_valid()

    def test_without_rules(self, operations, box_mesh):
        """Test patch names are kept without renameBoundary"""
        names = operations.rename_boundary_patches(box_mesh, MeshDict({}))
        assert names == ["xmin", "xmax", "ymin", "ymax", "zmin", "zmax"]

    def test_renumber(self, operations, box_mesh):
        """Test renumbering through the operations"""
        operations.renumber_mesh(box_mesh)
        assert box_mesh.is_valid()
        assert box_mesh.cell_volumes.sum() == pytest.approx(1.0)
