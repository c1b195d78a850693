"""Parameter files in the OpenCV YAML layout, with a process-wide current file."""
from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Mapping, Optional

import numpy as np
import yaml


class _OpenCVLoader(yaml.SafeLoader):
    """YAML loader that understands OpenCV matrix nodes."""


def _construct_matrix(loader: yaml.SafeLoader, node: yaml.Node) -> np.ndarray:
    fields = loader.construct_mapping(node, deep=True)
    data = np.array(fields["data"], dtype=float)
    return data.reshape(int(fields["rows"]), int(fields["cols"]))


_OpenCVLoader.add_constructor("tag:yaml.org,2002:opencv-matrix", _construct_matrix)


class Config:
    """Key/value parameters read from a YAML file."""

    _current: ClassVar[Optional["Config"]] = None

    def __init__(self, values: Mapping[str, Any]):
        self.values = dict(values)

    @classmethod
    def load(cls, filename) -> "Config":
        """Read a parameter file; a leading ``%YAML:1.0`` line is accepted."""
        path = Path(filename)
        if not path.is_file():
            raise FileNotFoundError(f"parameter file {filename} does not exist.")
        lines = path.read_text(encoding="utf-8").splitlines()
        if lines and lines[0].startswith("%YAML:"):
            lines = lines[1:]
        data = yaml.load("\n".join(lines), Loader=_OpenCVLoader)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"parameter file {filename} does not hold a mapping")
        return cls(data)

    def get(self, key: str) -> Any:
        try:
            return self.values[key]
        except KeyError:
            raise KeyError(f"parameter {key!r} is not set") from None

    def __contains__(self, key: object) -> bool:
        return key in self.values


def set_parameter_file(filename) -> Config:
    """Load ``filename`` and make it the current parameter file."""
    Config._current = None
    Config._current = Config.load(filename)
    return Config._current


def get(key: str) -> Any:
    """Value of ``key`` in the current parameter file."""
    current = Config._current
    if current is None:
        raise RuntimeError("no parameter file has been set")
    return current.get(key)