"""
Warning taxonomy shared by the importer and the compositor.

Only an unreadable scene stops the pipeline; every other problem degrades a
single layer or insertion area and is reported as a :class:`Diagnostic`
next to a successful result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class WarningKind(Enum):
    """Kinds of non-fatal problems."""

    IMPORT_WARNING = "import_warning"
    GEOMETRY_DEGENERATE = "geometry_degenerate"
    DESIGN_UNRESOLVED = "design_unresolved"
    DECODE_FAILURE = "decode_failure"


@dataclass(frozen=True)
class Diagnostic:
    kind: WarningKind
    message: str
    target_id: Optional[str] = None

    def __str__(self) -> str:
        if self.target_id:
            return f"[{self.kind.value}] {self.target_id}: {self.message}"
        return f"[{self.kind.value}] {self.message}"


class DiagnosticLog:
    """Collects diagnostics for one import or render call and logs them."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.entries: List[Diagnostic] = []

    def warn(self, kind: WarningKind, message: str, target_id: Optional[str] = None) -> Diagnostic:
        entry = Diagnostic(kind=kind, message=message, target_id=target_id)
        self.entries.append(entry)
        self.logger.warning("%s", entry)
        return entry

    def __len__(self) -> int:
        return len(self.entries)
