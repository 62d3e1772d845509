"""Actor registry — look up actor classes by the ``actor_name`` tasks refer to."""

from typing import Any

from actors.base import BaseActor
from core.errors import ConfigError


class ActorRegistry:
    def __init__(self):
        self._actors: dict[str, type[BaseActor]] = {}

    def register(self, actor_cls: type[BaseActor]) -> None:
        self._actors[actor_cls.name] = actor_cls

    def get(self, name: str) -> type[BaseActor]:
        if name not in self._actors:
            raise KeyError(f"Actor '{name}' not found. Registered: {list(self._actors)}")
        return self._actors[name]

    def create(self, name: str, options: dict[str, Any] | None = None) -> BaseActor:
        """Instantiate *name* with per-task *options*; raises ConfigError."""
        try:
            actor_cls = self.get(name)
        except KeyError as e:
            raise ConfigError(e.args[0]) from e
        return actor_cls(**(options or {}))

    def names(self) -> list[str]:
        return sorted(self._actors)


def default_registry() -> ActorRegistry:
    from actors.builtin import CommandActor, HttpRequestActor, NoopActor

    registry = ActorRegistry()
    registry.register(NoopActor)
    registry.register(HttpRequestActor)
    registry.register(CommandActor)
    return registry
