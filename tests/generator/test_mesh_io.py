"""
Unit tests for the mesh output context and polyMesh files.
"""
import json

import pytest
import numpy as np

from voromesh.generator.errors import MeshGenerationError, ResourceStateError
from voromesh.generator.mesh_io import (
    META_DATA_FILE, MeshOutputContext, has_poly_mesh, read_poly_mesh, write_poly_mesh
)


class TestMeshOutputContext:
    """Test suite for MeshOutputContext"""

    def test_commit_and_write(self, temp_dir, box_mesh):
        """Test a committed mesh is written with its metadata"""
        context = MeshOutputContext(temp_dir)
        assert not context.committed

        context.commit(box_mesh, {"surfaceFile": "cube.stl"})
        out_dir = context.write()

        assert context.committed
        assert out_dir == temp_dir / "constant" / "polyMesh"
        assert has_poly_mesh(temp_dir)
        with open(out_dir / META_DATA_FILE) as f:
            assert json.load(f) == {"surfaceFile": "cube.stl"}
        assert box_mesh.metadata["surfaceFile"] == "cube.stl"

    def test_commit_once(self, temp_dir, box_mesh):
        """Test a context accepts a single mesh"""
        context = MeshOutputContext(temp_dir)
        context.commit(box_mesh)

        with pytest.raises(ResourceStateError):
            context.commit(box_mesh)

    def test_mesh_state_written(self, temp_dir, box_mesh):
        """Test the mesh state flags are stored next to the surface metadata"""
        box_mesh.metadata.update({"geometryModified": True, "lastStep": "surfaceProjection"})
        context = MeshOutputContext(temp_dir)
        context.commit(box_mesh, {"surfaceFile": "cube.stl"})
        out_dir = context.write()

        with open(out_dir / META_DATA_FILE) as f:
            assert json.load(f) == {"surfaceFile": "cube.stl", "geometryModified": True,
                                    "lastStep": "surfaceProjection"}
        mesh = read_poly_mesh(temp_dir)
        assert mesh.metadata["geometryModified"] is True
        assert mesh.metadata["lastStep"] == "surfaceProjection"

    def test_write_before_commit(self, temp_dir):
        """Test writing without a mesh is refused and nothing is created"""
        context = MeshOutputContext(temp_dir)

        with pytest.raises(ResourceStateError):
            context.write()
        assert not context.poly_mesh_dir.exists()


class TestPolyMeshFiles:
    """Test suite for polyMesh reading and writing"""

    def test_files_written(self, temp_dir, box_mesh):
        """Test the polyMesh files and their headers"""
        out_dir = temp_dir / "constant" / "polyMesh"
        write_poly_mesh(box_mesh, out_dir)

        owner = (out_dir / "owner").read_text()
        assert "class       labelList;" in owner
        assert "nCells:8" in owner
        boundary = (out_dir / "boundary").read_text()
        assert "startFace       12;" in boundary
        assert boundary.count("nFaces          4;") == 6

    def test_round_trip(self, temp_dir, box_mesh):
        """Test a written mesh reads back unchanged"""
        context = MeshOutputContext(temp_dir)
        box_mesh.set_points(box_mesh.points * 0.1)
        context.commit(box_mesh, {"note": "box"})
        context.write()

        mesh = read_poly_mesh(temp_dir)

        assert np.allclose(mesh.points, box_mesh.points)
        assert mesh.faces == box_mesh.faces
        assert np.array_equal(mesh.owner, box_mesh.owner)
        assert np.array_equal(mesh.neighbour, box_mesh.neighbour)
        assert mesh.patch_names() == box_mesh.patch_names()
        assert [(p.start, p.size, p.type) for p in mesh.patches] == \
               [(p.start, p.size, p.type) for p in box_mesh.patches]
        assert mesh.metadata["note"] == "box"
        assert mesh.is_valid()

    def test_missing_mesh(self, temp_dir):
        """Test reading a case without a mesh"""
        assert not has_poly_mesh(temp_dir)
        with pytest.raises(MeshGenerationError, match="not found"):
            read_poly_mesh(temp_dir)
