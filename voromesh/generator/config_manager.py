"""
Configuration management for the mesh generator.
Handles loading and validation of the meshDict (JSON) and provides the
dictionary lookups used by the pipeline steps.
"""
import copy
import json
import logging
import numbers
from pathlib import Path
from typing import Dict, Any, Optional, Union

from .constants import STAGE_NAMES, DEFAULT_MESH_DICT, DEFAULT_CONSTANTS
from .errors import ConfigError

logger = logging.getLogger(__name__)

_MISSING = object()


class MeshDict:
    """Dictionary-like view over the meshDict with OpenFOAM style lookups.

    Sub-dictionaries returned by :meth:`sub_dict` share storage with the parent,
    so writes through them are visible to every holder of the dictionary.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None, name: str = "meshDict"):
        self._data = data if data is not None else {}
        self.name = name

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MeshDict":
        """Load a meshDict from a JSON file"""
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigError(f"meshDict not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to parse meshDict {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"meshDict {path} must contain a JSON object")

        logger.info(f"Loaded meshDict from {path}")
        return cls(data, name=str(path))

    @classmethod
    def from_case(cls, case_dir: Union[str, Path]) -> "MeshDict":
        """Load <case>/system/meshDict.json"""
        return cls.from_file(Path(case_dir) / DEFAULT_MESH_DICT)

    def found(self, key: str) -> bool:
        return key in self._data

    def is_dict(self, key: str) -> bool:
        return isinstance(self._data.get(key), dict)

    def sub_dict(self, key: str) -> "MeshDict":
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            raise ConfigError(f"Sub-dictionary '{key}' not found in {self.name}")
        if not isinstance(value, dict):
            raise ConfigError(f"Entry '{key}' in {self.name} is not a dictionary")
        return MeshDict(value, name=f"{self.name}/{key}")

    def lookup(self, key: str) -> Any:
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            raise ConfigError(f"Keyword '{key}' is undefined in {self.name}")
        return value

    def get_or_default(self, key: str, default: Any) -> Any:
        return self._data.get(key, default)

    def read_if_present(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def toc(self):
        return list(self._data.keys())

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the underlying data"""
        return copy.deepcopy(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self.lookup(key)

    def __repr__(self) -> str:
        return f"MeshDict({self.name!r}, keys={self.toc()})"


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _check_positive(mesh_dict: MeshDict, key: str, required: bool = False) -> None:
    if not mesh_dict.found(key):
        if required:
            raise ConfigError(f"Keyword '{key}' is undefined in {mesh_dict.name}")
        return
    value = mesh_dict.lookup(key)
    if not _is_number(value) or value <= 0:
        raise ConfigError(f"'{key}' in {mesh_dict.name} must be a positive number, got {value!r}")


def _check_layer_limit(n_layers, key: str) -> None:
    limit = DEFAULT_CONSTANTS['layers'].MAX_LAYERS
    if n_layers is not None and n_layers > limit:
        raise ConfigError(f"{key} is {n_layers}, the maximum is {limit}")


def _check_boundary_layers(mesh_dict: MeshDict) -> None:
    if not mesh_dict.found("boundaryLayers"):
        return
    if not mesh_dict.is_dict("boundaryLayers"):
        # A scalar entry only marks presence; no refinement settings to check
        logger.warning("boundaryLayers is not a dictionary - layer refinement will be skipped")
        return

    layers = mesh_dict.sub_dict("boundaryLayers")
    n_layers = layers.read_if_present("nLayers")
    if n_layers is not None and (not isinstance(n_layers, int) or isinstance(n_layers, bool)):
        raise ConfigError(f"boundaryLayers/nLayers must be an integer, got {n_layers!r}")
    _check_layer_limit(n_layers, "boundaryLayers/nLayers")

    _check_positive(layers, "thicknessRatio")
    _check_positive(layers, "maxFirstLayerThickness")

    if layers.found("patchBoundaryLayers"):
        if not layers.is_dict("patchBoundaryLayers"):
            raise ConfigError("boundaryLayers/patchBoundaryLayers must be a dictionary")
        patch_layers = layers.sub_dict("patchBoundaryLayers")
        for patch_name in patch_layers.toc():
            if not patch_layers.is_dict(patch_name):
                raise ConfigError(
                    f"boundaryLayers/patchBoundaryLayers/{patch_name} must be a dictionary")
            settings = patch_layers.sub_dict(patch_name)
            n = settings.read_if_present("nLayers")
            if n is not None and (not isinstance(n, int) or isinstance(n, bool) or n < 1):
                raise ConfigError(
                    f"boundaryLayers/patchBoundaryLayers/{patch_name}/nLayers must be a "
                    f"positive integer, got {n!r}")
            _check_layer_limit(n, f"boundaryLayers/patchBoundaryLayers/{patch_name}/nLayers")
            _check_positive(settings, "thicknessRatio")


def _check_anisotropic_sources(mesh_dict: MeshDict) -> None:
    if not mesh_dict.found("anisotropicSources"):
        return
    if not mesh_dict.is_dict("anisotropicSources"):
        raise ConfigError("anisotropicSources must be a dictionary of sources")

    sources = mesh_dict.sub_dict("anisotropicSources")
    for source_name in sources.toc():
        if not sources.is_dict(source_name):
            raise ConfigError(f"anisotropicSources/{source_name} must be a dictionary")
        source = sources.sub_dict(source_name)
        source_type = source.get_or_default("type", "box")
        if source_type not in ("box", "plane"):
            raise ConfigError(
                f"anisotropicSources/{source_name}: unknown type '{source_type}' "
                f"(expected 'box' or 'plane')")
        for axis in ("scaleX", "scaleY", "scaleZ"):
            _check_positive(source, axis)
        if source_type == "box":
            for axis in ("lengthX", "lengthY", "lengthZ"):
                _check_positive(source, axis)


def _check_rename_boundary(mesh_dict: MeshDict) -> None:
    if not mesh_dict.found("renameBoundary"):
        return
    if not mesh_dict.is_dict("renameBoundary"):
        raise ConfigError("renameBoundary must be a dictionary")

    rename = mesh_dict.sub_dict("renameBoundary")
    if rename.found("newPatchNames"):
        if not rename.is_dict("newPatchNames"):
            raise ConfigError("renameBoundary/newPatchNames must be a dictionary")
        new_names = rename.sub_dict("newPatchNames")
        for pattern in new_names.toc():
            if not new_names.is_dict(pattern):
                raise ConfigError(f"renameBoundary/newPatchNames/{pattern} must be a dictionary")


def _check_workflow_controls(mesh_dict: MeshDict) -> None:
    if not mesh_dict.found("workflowControls"):
        return
    if not mesh_dict.is_dict("workflowControls"):
        raise ConfigError("workflowControls must be a dictionary")

    controls = mesh_dict.sub_dict("workflowControls")
    for key in ("resumeFrom", "stopAfter"):
        step = controls.read_if_present(key)
        if step is not None and step not in STAGE_NAMES:
            raise ConfigError(
                f"workflowControls/{key}: unknown step '{step}'. "
                f"Valid steps are {', '.join(STAGE_NAMES)}")


def check_mesh_dict(mesh_dict: MeshDict) -> None:
    """Validate the meshDict before meshing starts.

    Raises:
        ConfigError: on the first missing or malformed entry
    """
    surface_file = mesh_dict.lookup("surfaceFile")
    if not isinstance(surface_file, str) or not surface_file.strip():
        raise ConfigError(f"surfaceFile must be a non-empty path, got {surface_file!r}")

    _check_positive(mesh_dict, "maxCellSize", required=True)
    _check_positive(mesh_dict, "minCellSize")
    _check_positive(mesh_dict, "boundaryCellSize")

    enforce = mesh_dict.read_if_present("enforceGeometryConstraints")
    if enforce is not None and not isinstance(enforce, bool):
        raise ConfigError(f"enforceGeometryConstraints must be true or false, got {enforce!r}")

    _check_boundary_layers(mesh_dict)
    _check_anisotropic_sources(mesh_dict)
    _check_rename_boundary(mesh_dict)
    _check_workflow_controls(mesh_dict)

    logger.debug(f"meshDict {mesh_dict.name} passed validation")
