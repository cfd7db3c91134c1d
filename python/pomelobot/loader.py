"""YAML script loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Union

import yaml

from .errors import ScriptLoadError

logger = logging.getLogger(__name__)

SCRIPT_SUFFIXES = (".yml", ".yaml")


def load_script(path: Union[str, Path]) -> List[Any]:
    """Read a robot script file and return its raw step list."""
    script_path = Path(path)
    if not script_path.is_absolute():
        script_path = Path.cwd() / script_path
    if script_path.suffix.lower() not in SCRIPT_SUFFIXES:
        raise ScriptLoadError(f"{path}: script files must end in .yml or .yaml")
    if not script_path.is_file():
        raise ScriptLoadError(f"{path}: no such script file")
    try:
        with script_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ScriptLoadError(f"{path}: invalid YAML: {exc}") from exc
    except OSError as exc:
        raise ScriptLoadError(f"{path}: {exc}") from exc
    if not isinstance(data, list):
        raise ScriptLoadError(f"{path}: script must be a list of steps")
    logger.debug("loaded %d steps from %s", len(data), script_path)
    return data


__all__ = ["load_script", "SCRIPT_SUFFIXES"]
