"""Static tool descriptors consumed by the permission engine.

Every tool the agent can call is described once, up front, by a
``ToolDescriptor``. The engine never branches on tool names; it dispatches on
the descriptor's ``kind``:

- ``SHELL`` tools carry a command string that is decomposed into simple commands.
- ``SINGLE_PATH`` tools carry exactly one path argument and accept path-pattern rules.
- ``OPAQUE`` tools are matched on a rendering of their input.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ToolKind(str, Enum):
    """Capability tag attached to each tool descriptor."""

    SINGLE_PATH = "single_path"
    SHELL = "shell"
    OPAQUE = "opaque"


class ToolDescriptor(BaseModel):
    """What the permission engine needs to know about one tool."""

    name: str
    kind: ToolKind = ToolKind.OPAQUE
    restricted: bool = True
    mutates_files: bool = False
    # Input fields holding the path for SINGLE_PATH tools, first present wins.
    path_fields: Tuple[str, ...] = Field(default_factory=tuple)
    # Input field rendered into the rule argument for SHELL and OPAQUE tools.
    argument_field: Optional[str] = None
    model_config = ConfigDict(frozen=True)

    def extract_path(self, tool_input: Mapping[str, Any]) -> Optional[str]:
        if self.kind is not ToolKind.SINGLE_PATH:
            return None
        for field in self.path_fields:
            value = tool_input.get(field)
            if isinstance(value, str) and value.strip():
                return value
        return None

    def extract_argument(self, tool_input: Mapping[str, Any]) -> str:
        """Render the argument string used in ``ToolName(argument)``."""
        if self.kind is ToolKind.SINGLE_PATH:
            return self.extract_path(tool_input) or ""
        if self.argument_field:
            value = tool_input.get(self.argument_field)
            if isinstance(value, str):
                return value
        if self.kind is ToolKind.SHELL:
            return ""
        try:
            return json.dumps(dict(tool_input), sort_keys=True, separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            return str(dict(tool_input))


DEFAULT_TOOLS: Tuple[ToolDescriptor, ...] = (
    ToolDescriptor(name="Bash", kind=ToolKind.SHELL, argument_field="command"),
    ToolDescriptor(
        name="Write",
        kind=ToolKind.SINGLE_PATH,
        mutates_files=True,
        path_fields=("file_path", "target_file"),
    ),
    ToolDescriptor(
        name="Edit",
        kind=ToolKind.SINGLE_PATH,
        mutates_files=True,
        path_fields=("file_path", "target_file"),
    ),
    ToolDescriptor(
        name="MultiEdit",
        kind=ToolKind.SINGLE_PATH,
        mutates_files=True,
        path_fields=("file_path", "target_file"),
    ),
    ToolDescriptor(
        name="Delete",
        kind=ToolKind.SINGLE_PATH,
        mutates_files=True,
        path_fields=("target_file", "file_path"),
    ),
    ToolDescriptor(
        name="NotebookEdit",
        kind=ToolKind.SINGLE_PATH,
        mutates_files=True,
        path_fields=("notebook_path",),
    ),
    ToolDescriptor(
        name="Read", kind=ToolKind.SINGLE_PATH, restricted=False, path_fields=("file_path",)
    ),
    ToolDescriptor(name="LS", kind=ToolKind.SINGLE_PATH, restricted=False, path_fields=("path",)),
    ToolDescriptor(name="Glob", restricted=False, argument_field="pattern"),
    ToolDescriptor(name="Grep", restricted=False, argument_field="pattern"),
    ToolDescriptor(name="WebFetch", argument_field="url"),
    ToolDescriptor(name="Task", restricted=False),
    ToolDescriptor(name="TodoWrite", restricted=False),
)


class ToolCatalog:
    """Lookup table of tool descriptors. Unknown tools are opaque and restricted."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: ToolDescriptor) -> None:
        self._tools[descriptor.name] = descriptor

    def get(self, name: str) -> ToolDescriptor:
        descriptor = self._tools.get(name)
        if descriptor is None:
            return ToolDescriptor(name=name)
        return descriptor

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())


def default_catalog() -> ToolCatalog:
    return ToolCatalog(DEFAULT_TOOLS)


__all__ = [
    "DEFAULT_TOOLS",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolKind",
    "default_catalog",
]
