"""
Workflow control: decides which named pipeline steps execute.
"""
import logging
from typing import Iterable, Optional, Sequence

from .constants import STAGE_NAMES
from .errors import ConfigError

logger = logging.getLogger(__name__)


class StepController:
    """Pure per-step run/skip policy over a fixed ordered list of step names.

    With no resume point every step runs. With ``resume_from`` set, steps
    strictly before it are skipped and the rest run. ``stop_after`` skips every
    step strictly after the named one. Queries have no side effects and may be
    made in any order.
    """

    def __init__(self, steps: Sequence[str] = STAGE_NAMES,
                 resume_from: Optional[str] = None,
                 stop_after: Optional[str] = None):
        self.steps = tuple(steps)
        if len(set(self.steps)) != len(self.steps):
            raise ConfigError(f"Duplicate step names in {self.steps}")

        self._index = {name: i for i, name in enumerate(self.steps)}
        self.resume_from = resume_from
        self.stop_after = stop_after

        self._first = self._position(resume_from) if resume_from else 0
        self._last = self._position(stop_after) if stop_after else len(self.steps) - 1

        if self._first > self._last:
            raise ConfigError(
                f"Resume step '{resume_from}' comes after stop step '{stop_after}'")

    @classmethod
    def from_mesh_dict(cls, mesh_dict, resume_from: Optional[str] = None,
                       steps: Sequence[str] = STAGE_NAMES) -> "StepController":
        """Build from the meshDict workflowControls; an explicit resume point wins"""
        configured_resume = None
        stop_after = None
        if mesh_dict.is_dict("workflowControls"):
            controls = mesh_dict.sub_dict("workflowControls")
            configured_resume = controls.read_if_present("resumeFrom")
            stop_after = controls.read_if_present("stopAfter")

        return cls(steps, resume_from=resume_from or configured_resume, stop_after=stop_after)

    def _position(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError:
            raise ConfigError(
                f"Unknown workflow step '{name}'. Valid steps are {', '.join(self.steps)}")

    def should_run(self, name: str) -> bool:
        position = self._position(name)
        return self._first <= position <= self._last

    def runs_everything(self) -> bool:
        return self._first == 0 and self._last == len(self.steps) - 1

    def skipped_steps(self) -> Iterable[str]:
        return [name for name in self.steps if not self.should_run(name)]

    def __repr__(self) -> str:
        return (f"StepController(resume_from={self.resume_from!r}, "
                f"stop_after={self.stop_after!r})")
