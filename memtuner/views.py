"""View models for the module list and the inject options."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from memtuner.model import ModuleInfo


def _file_name(path: str) -> str:
    return path.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ModuleRow:
    """One row of the module list."""

    name: str
    start: str
    end: str
    size: str
    path: str
    module: ModuleInfo


def module_rows(modules: Iterable[ModuleInfo], text: str = "") -> list[ModuleRow]:
    """Return rows for modules whose path holds text, case-insensitively, newest first."""
    needle = text.casefold()
    rows = []
    for info in reversed(list(modules)):
        if needle and needle not in info.path.casefold():
            continue
        rows.append(
            ModuleRow(
                name=_file_name(info.path),
                start=f"0x{info.base_address:x}",
                end=f"0x{info.base_address + info.size:x}",
                size=f"{info.size:,}",
                path=info.path,
                module=info,
            )
        )
    return rows


@dataclass
class ModuleSelection:
    """The module selected in the list; clicking the selected one clears it."""

    current: Optional[ModuleInfo] = None

    def click(self, module: Optional[ModuleInfo]) -> Optional[ModuleInfo]:
        """Toggle the selection and return the module now selected."""
        if module is None:
            return self.current
        if self.current is module:
            self.current = None
        else:
            self.current = module
        return self.current


@dataclass
class InjectOptions:
    """State of the options for starting a capture."""

    allocator: int = 0
    capture_enabled: bool = False
    capture_checked: bool = True
    load_after_enabled: bool = True
    load_after_checked: bool = True

    def capture(self, should_capture: bool) -> None:
        """React to the capture option being toggled."""
        self.load_after_enabled = should_capture

    def allocator_changed(self, index: int) -> None:
        """Select an allocator; the default allocator always captures."""
        self.allocator = index
        self.capture_enabled = index > 0
        if index == 0:
            self.capture_checked = True
            self.load_after_enabled = True

    def load_after_capture(self) -> bool:
        """Return True if the capture should be loaded once it finishes."""
        return (
            (self.capture_enabled or self.allocator == 0)
            and self.capture_checked
            and self.load_after_checked
        )