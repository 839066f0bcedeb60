"""The template archive produced by a successful build."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pvelxcbuild.utils.logging import get_logger

logger = get_logger(__name__)

BUILDER_ID = "proxmox.builder"


@dataclass(frozen=True)
class Artifact:
    """A .tar.gz template on the local filesystem."""
    template_path: Path
    state_data: dict[str, Any] = field(default_factory=dict)

    @property
    def builder_id(self) -> str:
        return BUILDER_ID

    def files(self) -> list[str]:
        return [str(self.template_path)]

    def id(self) -> str:
        return str(self.template_path)

    def state(self, name: str) -> Any:
        return self.state_data.get(name)

    def destroy(self) -> None:
        logger.info(f"Destroying template: {self.template_path}")
        os.remove(self.template_path)

    def __str__(self) -> str:
        return f"A template was created: {self.template_path}"
