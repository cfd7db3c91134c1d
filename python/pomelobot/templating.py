"""Variable scopes and ``$scope.path`` substitution for robot scripts."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence

from .errors import TemplateLookupError

SCOPE_PREFIX = "$"
KNOWN_SCOPES = ("session", "options", "opts", "args", "env")
_MISSING = object()


def _freeze(values: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(copy.deepcopy(dict(values or {})))


def lookup_path(data: Any, path: Sequence[str], default: Any = _MISSING) -> Any:
    """Walk ``path`` through nested mappings and lists."""
    value = data
    for key in path:
        if isinstance(value, Mapping) and key in value:
            value = value[key]
            continue
        if isinstance(value, (list, tuple)) and key.lstrip("-").isdigit():
            index = int(key)
            if -len(value) <= index < len(value):
                value = value[index]
                continue
        if default is _MISSING:
            raise TemplateLookupError(f"cannot resolve {'.'.join(path)!r}")
        return default
    return value


def is_reference(value: Any) -> bool:
    if not isinstance(value, str) or not value.startswith(SCOPE_PREFIX):
        return False
    scope, dot, _ = value[len(SCOPE_PREFIX) :].partition(".")
    return bool(dot) and scope in KNOWN_SCOPES


@dataclass
class VariableScope:
    """The four stores a script can read: $session, $options, $args and $env."""

    session: Dict[str, Any] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)
    args: Mapping[str, Any] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ)

    def __post_init__(self) -> None:
        self.options = _freeze(self.options)
        self.args = _freeze(self.args)

    def stores(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "options": self.options,
            "opts": self.options,
            "args": self.args,
        }

    def lookup(self, reference: str, default: Any = _MISSING) -> Any:
        """Resolve a single ``$scope.path`` reference."""
        scope, _, path = reference[len(SCOPE_PREFIX) :].partition(".")
        if scope == "env":
            name = path.strip()
            if name in self.environ:
                return self.environ[name]
            if default is _MISSING:
                raise TemplateLookupError(f"environment variable {name!r} is not set")
            return default
        stores = self.stores()
        if scope not in stores or not path:
            if default is _MISSING:
                raise TemplateLookupError(f"unknown variable scope in {reference!r}")
            return default
        try:
            return lookup_path(stores[scope], path.split("."), default)
        except TemplateLookupError:
            raise TemplateLookupError(f"cannot resolve {reference!r}") from None

    def resolve(self, value: Any) -> Any:
        """Return a deep copy of ``value`` with every reference substituted."""
        if isinstance(value, str):
            if is_reference(value):
                return copy.deepcopy(self.lookup(value))
            return value
        if isinstance(value, Mapping):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        return copy.deepcopy(value)

    def capture(self, bindings: Mapping[str, str], data: Any) -> None:
        """Store response fields into ``$session`` (name -> dotted path)."""
        for name, path in bindings.items():
            if not isinstance(path, str):
                raise TemplateLookupError(f"session binding {name!r} must be a dotted path string")
            self.session[name] = copy.deepcopy(lookup_path(data, path.split(".")))


__all__ = ["VariableScope", "lookup_path", "is_reference"]
