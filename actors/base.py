"""Actor base class — the opaque unit of work a scheduled task performs."""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from core.errors import ConfigError
from scheduler.models import ExecutionResult


class ActorOptions(BaseModel):
    """Per-task options; subclasses declare the fields their actor accepts."""

    model_config = {"extra": "forbid"}


class BaseActor(ABC):
    """All actors must inherit from this class.

    ``execute`` returns an ExecutionResult on success and raises on failure.
    The scheduler treats every exception the same way, whatever its cause.
    """

    name: ClassVar[str]
    description: ClassVar[str] = ""
    options_model: ClassVar[type[ActorOptions]] = ActorOptions

    def __init__(self, **options: Any):
        try:
            self.options = self.options_model.model_validate(options)
        except ValidationError as e:
            raise ConfigError(f"invalid options for actor '{self.name}': {e}") from e

    @abstractmethod
    async def execute(self) -> ExecutionResult:
        """Run once and report sub-step counts."""
        ...
