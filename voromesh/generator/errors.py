"""
Exception taxonomy for the mesh generation pipeline.

MeshGenerationError and its subclasses are descriptive failures: the generator
reports their message. Anything else reaching the generator boundary is an
unclassified failure.
"""
from typing import Optional


class MeshGenerationError(RuntimeError):
    """Descriptive failure raised by the pipeline or one of its stages"""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigError(MeshGenerationError, ValueError):
    """Missing or malformed meshDict entry"""


class StageError(MeshGenerationError):
    """A stage operation could not produce a valid mesh"""


class ResourceStateError(RuntimeError):
    """A pipeline resource was used outside its lifetime (programming error)"""
