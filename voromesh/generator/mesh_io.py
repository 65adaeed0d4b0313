"""
Output context for generated meshes.

The generator commits a finished mesh and its metadata to a
MeshOutputContext; writing to disk is a separate step. Meshes are written as
an OpenFOAM ascii polyMesh under <case>/constant/polyMesh, and can be read
back to resume a run from an intermediate state.
"""
import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from .errors import MeshGenerationError, ResourceStateError
from .volume_mesh import BoundaryPatch, VolumeMesh

logger = logging.getLogger(__name__)

POLY_MESH_DIR = Path("constant") / "polyMesh"
META_DATA_FILE = "meshMetaDict.json"

_BANNER = r"""/*--------------------------------*- C++ -*----------------------------------*\
  =========                 |
  \\      /  F ield         | OpenFOAM: The Open Source CFD Toolbox
   \\    /   O peration     | Website:  https://openfoam.org
    \\  /    A nd           | Version:  12
     \\/     M anipulation  |
\*---------------------------------------------------------------------------*/
"""


def _header(foam_class: str, obj: str, note: Optional[str] = None) -> str:
    note_line = f'    note        "{note}";\n' if note else ""
    return (f"{_BANNER}FoamFile\n{{\n"
            f"    format      ascii;\n"
            f"    class       {foam_class};\n"
            f"{note_line}"
            f"    location    \"constant/polyMesh\";\n"
            f"    object      {obj};\n"
            f"}}\n\n")


class MeshOutputContext:
    """Receives the generated mesh; nothing is written until write() is called"""

    def __init__(self, case_dir: Union[str, Path]):
        self.case_dir = Path(case_dir)
        self.mesh: Optional[VolumeMesh] = None
        self.metadata: Dict = {}

    @property
    def committed(self) -> bool:
        return self.mesh is not None

    @property
    def poly_mesh_dir(self) -> Path:
        return self.case_dir / POLY_MESH_DIR

    def commit(self, mesh: VolumeMesh, metadata: Optional[Dict] = None) -> None:
        if self.committed:
            raise ResourceStateError("A mesh has already been committed to this context")
        self.mesh = mesh
        mesh.metadata.update(metadata or {})
        self.metadata = dict(mesh.metadata)
        logger.debug(f"Committed mesh to {self.case_dir}: {mesh}")

    def write(self) -> Path:
        """Write the committed mesh as an OpenFOAM polyMesh"""
        if not self.committed:
            raise ResourceStateError("No mesh has been committed to this context")
        out_dir = self.poly_mesh_dir
        write_poly_mesh(self.mesh, out_dir)

        with open(out_dir / META_DATA_FILE, "w") as f:
            json.dump(self.metadata, f, indent=2)

        logger.info(f"Mesh written to {out_dir}")
        return out_dir


def write_poly_mesh(mesh: VolumeMesh, out_dir: Union[str, Path]) -> None:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    note = (f"nPoints:{mesh.n_points}  nCells:{mesh.n_cells}  nFaces:{mesh.n_faces}  "
            f"nInternalFaces:{mesh.n_internal_faces}")

    with open(out_dir / "points", "w") as f:
        f.write(_header("vectorField", "points"))
        f.write(f"{mesh.n_points}\n(\n")
        for x, y, z in mesh.points.tolist():
            f.write(f"({x:.10g} {y:.10g} {z:.10g})\n")
        f.write(")\n")

    with open(out_dir / "faces", "w") as f:
        f.write(_header("faceList", "faces"))
        f.write(f"{mesh.n_faces}\n(\n")
        for face in mesh.faces:
            f.write(f"{len(face)}({' '.join(str(p) for p in face)})\n")
        f.write(")\n")

    for name, values in (("owner", mesh.owner), ("neighbour", mesh.neighbour)):
        with open(out_dir / name, "w") as f:
            f.write(_header("labelList", name, note))
            f.write(f"{len(values)}\n(\n")
            f.write("\n".join(str(v) for v in values.tolist()))
            f.write("\n)\n")

    with open(out_dir / "boundary", "w") as f:
        f.write(_header("polyBoundaryMesh", "boundary"))
        f.write(f"{len(mesh.patches)}\n(\n")
        for patch in mesh.patches:
            f.write(f"    {patch.name}\n    {{\n"
                    f"        type            {patch.type};\n"
                    f"        nFaces          {patch.size};\n"
                    f"        startFace       {patch.start};\n"
                    f"    }}\n")
        f.write(")\n")


def _strip_header(text: str) -> str:
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
    text = re.sub(r"//[^\n]*", "", text)
    return re.sub(r"FoamFile\s*\{.*?\}", "", text, count=1, flags=re.DOTALL)


def _read_list_body(path: Path) -> str:
    if not path.exists():
        raise MeshGenerationError(f"Mesh file not found: {path}")
    text = _strip_header(path.read_text())
    match = re.search(r"(\d+)\s*\((.*)\)", text, flags=re.DOTALL)
    if match is None:
        raise MeshGenerationError(f"Could not parse {path}")
    return match.group(2)


def has_poly_mesh(case_dir: Union[str, Path]) -> bool:
    mesh_dir = Path(case_dir) / POLY_MESH_DIR
    return all((mesh_dir / name).exists() for name in ("points", "faces", "owner", "neighbour", "boundary"))


def read_poly_mesh(case_dir: Union[str, Path]) -> VolumeMesh:
    """Read <case>/constant/polyMesh written by write_poly_mesh"""
    mesh_dir = Path(case_dir) / POLY_MESH_DIR

    points = np.array([[float(v) for v in m.groups()] for m in re.finditer(
        r"\(\s*(\S+)\s+(\S+)\s+(\S+)\s*\)", _read_list_body(mesh_dir / "points"))])
    faces = [tuple(int(p) for p in m.group(1).split())
             for m in re.finditer(r"\d+\s*\(([^)]*)\)", _read_list_body(mesh_dir / "faces"))]
    owner = np.array(_read_list_body(mesh_dir / "owner").split(), dtype=np.int64)
    neighbour = np.array(_read_list_body(mesh_dir / "neighbour").split(), dtype=np.int64)

    boundary_text = _strip_header((mesh_dir / "boundary").read_text())
    patches = []
    for m in re.finditer(r"(\S+)\s*\{([^}]*)\}", boundary_text):
        entries = dict(re.findall(r"(\w+)\s+([^;]+);", m.group(2)))
        patches.append(BoundaryPatch(m.group(1), entries.get("type", "patch").strip(),
                                     int(entries["startFace"]), int(entries["nFaces"])))

    mesh = VolumeMesh(points, faces, owner, neighbour, patches)
    meta_file = mesh_dir / META_DATA_FILE
    if meta_file.exists():
        with open(meta_file) as f:
            mesh.metadata.update(json.load(f))

    logger.info(f"Read mesh from {mesh_dir}: {mesh}")
    return mesh
