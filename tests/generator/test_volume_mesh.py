"""
Unit tests for the polyhedral volume mesh.
"""
import pytest
import numpy as np

from voromesh.generator.errors import StageError
from voromesh.generator.volume_mesh import VolumeMesh


def point_index(mesh, coordinates):
    matches = np.flatnonzero(np.all(np.isclose(mesh.points, coordinates), axis=1))
    assert len(matches) == 1
    return int(matches[0])


class TestVolumeMeshConstruction:
    """Test suite for building meshes from face lists"""

    def test_box_mesh_layout(self, box_mesh):
        """Test sizes and patch layout of the 2x2x2 box"""
        assert box_mesh.n_cells == 8
        assert box_mesh.n_points == 27
        assert box_mesh.n_internal_faces == 12
        assert box_mesh.n_faces == 36
        assert box_mesh.patch_names() == ["xmin", "xmax", "ymin", "ymax", "zmin", "zmax"]
        assert [patch.size for patch in box_mesh.patches] == [4] * 6
        assert box_mesh.patches[0].start == 12
        assert list(box_mesh.patches[1].face_range()) == [16, 17, 18, 19]
        assert box_mesh.is_valid()

    def test_internal_faces_upper_triangular(self, box_mesh):
        """Test internal faces are ordered by owner with owner < neighbour"""
        owner = box_mesh.owner[:box_mesh.n_internal_faces]
        assert np.all(owner < box_mesh.neighbour)
        assert np.all(np.diff(owner) >= 0)

    def test_faces_flipped_to_lower_owner(self, box_mesh):
        """Test faces given with owner > neighbour are reversed on construction"""
        points, faces, owner, neighbour, face_patch, names, types = box_mesh.to_face_list()
        internal = neighbour >= 0
        swapped_faces = [tuple(reversed(face)) if internal[f] else face for f, face in enumerate(faces)]
        swapped_owner = np.where(internal, neighbour, owner)
        swapped_neighbour = np.where(internal, owner, -1)

        rebuilt = VolumeMesh.from_face_list(points, swapped_faces, swapped_owner, swapped_neighbour,
                                            face_patch, names, types)

        assert rebuilt.faces == box_mesh.faces
        assert np.array_equal(rebuilt.owner, box_mesh.owner)
        assert np.array_equal(rebuilt.neighbour, box_mesh.neighbour)

    def test_unused_points_dropped(self, box_mesh):
        """Test points not referenced by any face are removed"""
        points, faces, owner, neighbour, face_patch, names, types = box_mesh.to_face_list()
        points = np.vstack([points, [[5.0, 5.0, 5.0]]])

        rebuilt = VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch, names, types)
        assert rebuilt.n_points == 27

    def test_invalid_face_lists(self, box_mesh):
        """Test inconsistent face lists are rejected"""
        points, faces, owner, neighbour, face_patch, names, types = box_mesh.to_face_list()

        with pytest.raises(StageError, match="no valid patch"):
            bad_patch = face_patch.copy()
            bad_patch[-1] = 17
            VolumeMesh.from_face_list(points, faces, owner, neighbour, bad_patch, names)

        with pytest.raises(StageError, match="same owner and neighbour"):
            bad_neighbour = neighbour.copy()
            bad_neighbour[0] = owner[0]
            VolumeMesh.from_face_list(points, faces, owner, bad_neighbour, face_patch, names)

        with pytest.raises(StageError, match="Inconsistent"):
            VolumeMesh.from_face_list(points, faces[:-1], owner, neighbour, face_patch, names)

    def test_empty_patches_kept(self, box_mesh):
        """Test patches without faces keep their place"""
        points, faces, owner, neighbour, face_patch, names, types = box_mesh.to_face_list()
        rebuilt = VolumeMesh.from_face_list(points, faces, owner, neighbour, face_patch,
                                            names + ["unused"])

        assert rebuilt.patch_names()[-1] == "unused"
        assert rebuilt.patches[-1].size == 0
        assert rebuilt.is_valid()

    def test_copy_is_independent(self, box_mesh):
        """Test copies do not share point storage"""
        duplicate = box_mesh.copy()
        duplicate.set_points(duplicate.points * 2.0)

        assert box_mesh.points.max() == pytest.approx(1.0)
        assert duplicate.points.max() == pytest.approx(2.0)

    def test_replace_with(self, box_mesh, box_mesh_factory):
        """Test in-place replacement keeps the object identity"""
        target = VolumeMesh.empty()
        target.metadata["kept"] = True
        target.replace_with(box_mesh_factory(3))

        assert target.n_cells == 27
        assert target.metadata["kept"] is True
        assert target.cell_volumes.sum() == pytest.approx(1.0)

    def test_empty_mesh(self):
        """Test the empty mesh"""
        mesh = VolumeMesh.empty()

        assert mesh.is_empty()
        assert mesh.n_points == 0
        assert mesh.check_topology() == ["Mesh has no cells"]
        assert mesh.check_geometry()["cells"] == 0


class TestVolumeMeshAddressing:
    """Test suite for derived addressing"""

    def test_cells(self, box_mesh):
        """Test every hexahedron has six faces and eight points"""
        assert all(len(faces) == 6 for faces in box_mesh.cells)
        assert len(box_mesh.cell_points(0)) == 8

    def test_boundary_points(self, box_mesh):
        """Test all points except the centre lie on the boundary"""
        centre = point_index(box_mesh, [0.5, 0.5, 0.5])

        assert len(box_mesh.boundary_points) == 26
        assert centre not in box_mesh.boundary_points
        assert box_mesh.point_cells[centre] == list(range(8))

    def test_boundary_point_patches(self, box_mesh):
        """Test patches touching corner, edge and face points"""
        patches = box_mesh.boundary_point_patches()
        names = box_mesh.patch_names()

        corner = point_index(box_mesh, [0.0, 0.0, 0.0])
        edge = point_index(box_mesh, [0.5, 0.0, 0.0])
        face = point_index(box_mesh, [0.5, 0.5, 0.0])

        assert {names[p] for p in patches[corner]} == {"xmin", "ymin", "zmin"}
        assert {names[p] for p in patches[edge]} == {"ymin", "zmin"}
        assert {names[p] for p in patches[face]} == {"zmin"}

    def test_boundary_point_neighbours(self, box_mesh):
        """Test boundary edge connectivity"""
        neighbours = box_mesh.boundary_point_neighbours()
        face = point_index(box_mesh, [0.5, 0.5, 0.0])
        assert len(neighbours[face]) == 4

    def test_face_patch_labels(self, box_mesh):
        """Test internal faces carry -1"""
        labels = box_mesh.face_patch_labels()
        assert np.all(labels[:12] == -1)
        assert labels[12:].tolist() == [i for i in range(6) for _ in range(4)]

    def test_cache_dropped_on_change(self, box_mesh):
        """Test point changes reset derived geometry"""
        assert box_mesh.cell_volumes.sum() == pytest.approx(1.0)
        box_mesh.set_points(box_mesh.points * 2.0)
        assert box_mesh.cell_volumes.sum() == pytest.approx(8.0)

    def test_set_points_shape(self, box_mesh):
        """Test point arrays of the wrong size are rejected"""
        with pytest.raises(StageError):
            box_mesh.set_points(np.zeros((3, 3)))

    def test_locking(self, box_mesh):
        """Test point locks"""
        box_mesh.lock_points([1, 2, 2])
        assert box_mesh.locked_points == {1, 2}
        box_mesh.unlock_points()
        assert box_mesh.locked_points == set()


class TestVolumeMeshGeometry:
    """Test suite for geometry and checks"""

    def test_cell_geometry(self, box_mesh):
        """Test hexahedron volumes and centres"""
        assert np.allclose(box_mesh.cell_volumes, 0.125)
        assert np.allclose(np.sort(box_mesh.cell_centres[:, 0]), [0.25] * 4 + [0.75] * 4)

    def test_boundary_normals_point_outwards(self, box_mesh):
        """Test boundary area vectors point out of the domain"""
        areas = box_mesh.face_areas
        assert np.allclose(areas[box_mesh.n_internal_faces:].sum(axis=0), 0.0)

        xmax = box_mesh.patches[box_mesh.patch_index("xmax")]
        assert np.all(areas[xmax.start:xmax.start + xmax.size, 0] > 0)
        xmin = box_mesh.patches[box_mesh.patch_index("xmin")]
        assert np.all(areas[xmin.start:xmin.start + xmin.size, 0] < 0)

    def test_quality_of_box(self, box_mesh):
        """Test an orthogonal box has no quality problems"""
        quality = box_mesh.check_geometry()

        assert quality["negative_volume_cells"] == 0
        assert quality["max_non_orthogonality"] == pytest.approx(0.0, abs=1e-6)
        assert quality["total_volume"] == pytest.approx(1.0)

    def test_open_cell_detected(self, box_mesh):
        """Test a damaged face breaks cell closure and the boundary"""
        box_mesh.faces[-1] = box_mesh.faces[-1][:3]
        problems = box_mesh.check_topology()

        assert not box_mesh.is_valid()
        assert any("not closed" in problem for problem in problems)
        assert any("boundary edges" in problem for problem in problems)

    def test_patch_gap_detected(self, box_mesh):
        """Test patches must tile the boundary faces"""
        box_mesh.patches[2].size -= 1
        problems = box_mesh.check_topology()
        assert any("Patch" in problem or "cover" in problem for problem in problems)

    def test_duplicate_patch_names(self, box_mesh):
        """Test duplicate patch names are a problem"""
        box_mesh.patches[1].name = "xmin"
        assert "Duplicate patch names" in box_mesh.check_topology()

    def test_patch_index(self, box_mesh):
        """Test patch lookup by name"""
        assert box_mesh.patch_index("zmax") == 5
        with pytest.raises(KeyError):
            box_mesh.patch_index("inlet")


class TestRenumbering:
    """Test suite for bandwidth renumbering"""

    def test_renumber_keeps_mesh(self, box_mesh_factory):
        """Test renumbering preserves geometry, sets, locks and layer columns"""
        mesh = box_mesh_factory(3)
        corner = point_index(mesh, [0.0, 0.0, 0.0])
        inner = point_index(mesh, [1.0 / 3.0, 1.0 / 3.0, 1.0 / 3.0])
        mesh.lock_points([corner])
        mesh.layer_edges = np.array([[corner, inner]])
        centre_cell = int(np.argmin(np.linalg.norm(mesh.cell_centres - 0.5, axis=1)))
        mesh.cell_sets["centre"] = {centre_cell}

        mesh.renumber_mesh()

        assert mesh.is_valid()
        assert mesh.n_cells == 27
        assert mesh.n_points == 64
        assert mesh.cell_volumes.sum() == pytest.approx(1.0)
        owner = mesh.owner[:mesh.n_internal_faces]
        assert np.all(owner < mesh.neighbour)
        assert np.all(np.diff(owner) >= 0)

        (locked,) = mesh.locked_points
        assert np.allclose(mesh.points[locked], [0.0, 0.0, 0.0])
        outer, inner_point = mesh.layer_edges[0]
        assert np.allclose(mesh.points[outer], [0.0, 0.0, 0.0])
        assert np.allclose(mesh.points[inner_point], [1.0 / 3.0] * 3)
        (centre,) = mesh.cell_sets["centre"]
        assert np.allclose(mesh.cell_centres[centre], [0.5, 0.5, 0.5])

    def test_renumber_empty(self):
        """Test renumbering an empty mesh is a no-op"""
        mesh = VolumeMesh.empty()
        mesh.renumber_mesh()
        assert mesh.is_empty()

    def test_summary(self, box_mesh):
        """Test summary and repr"""
        summary = box_mesh.summary()

        assert summary["cells"] == 8
        assert summary["patches"]["ymin"] == 4
        assert "cells=8" in repr(box_mesh)
