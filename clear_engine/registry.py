# clear_engine/registry.py

"""Explicit mapping from a type tag to a constructor."""

from typing import Callable, Dict, List

from .errors import ConfigError


class Registry:
    """
    Maps type tags (e.g. 'max_pooling', 'sgd') to constructor callables.

    Registries are built once by the caller and passed to whatever needs to
    create objects; nothing here is module-level state.
    """

    def __init__(self, kind: str):
        self.kind = kind
        self._constructors: Dict[str, Callable] = {}

    def register(self, tag: str, constructor: Callable) -> None:
        if tag in self._constructors:
            raise ConfigError(f"{self.kind} type '{tag}' is already registered")
        self._constructors[tag] = constructor

    def create(self, tag: str, *args, **kwargs):
        if tag not in self._constructors:
            raise ConfigError(f"Unknown {self.kind} type '{tag}'. "
                              f"Valid options: {self.tags()}")
        return self._constructors[tag](*args, **kwargs)

    def tags(self) -> List[str]:
        return sorted(self._constructors)

    def __contains__(self, tag: str) -> bool:
        return tag in self._constructors
