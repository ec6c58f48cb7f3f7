"""Directive artifact reader."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import DirectiveError
from .models import DirectiveArtifact

logger = logging.getLogger(__name__)

CONTINUE_ARTIFACT = {"action": "continue"}


class DirectiveReader:
    """Reads the JSON decision file agents leave behind after a step."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> Optional[DirectiveArtifact]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise DirectiveError(f"Cannot read directive file {self.path}: {exc}") from exc
        try:
            return DirectiveArtifact.model_validate(json.loads(content))
        except (ValueError, ValidationError) as exc:
            raise DirectiveError(f"Malformed directive file {self.path}: {exc}") from exc

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    async def read(self) -> Optional[DirectiveArtifact]:
        """Return the current artifact, or ``None`` when there is none."""
        return await asyncio.to_thread(self._read)

    async def write(self, artifact: DirectiveArtifact) -> None:
        await asyncio.to_thread(
            self._write, artifact.model_dump(exclude_none=True)
        )

    async def reset(self) -> None:
        """Replace the artifact with a plain ``continue`` decision."""
        try:
            await asyncio.to_thread(self._write, CONTINUE_ARTIFACT)
        except OSError as exc:
            logger.warning(f"Could not reset directive file {self.path}: {exc}")
