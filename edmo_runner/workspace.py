"""Workspace: the entry blocks handed to the scheduler."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel


class EntryBlock(BaseModel):
    """JavaScript generated for one "start" block."""

    id: str
    source: str


class Workspace(BaseModel):
    entries: list[EntryBlock] = []

    @classmethod
    def from_sources(cls, *sources: str) -> Workspace:
        return cls(
            entries=[
                EntryBlock(id=f"start_{i}", source=source)
                for i, source in enumerate(sources)
            ]
        )


def load_workspace(path: str | Path) -> Workspace:
    """Read a workspace from JSON: ``{"entries": [{"id": ..., "source": ...}]}``."""
    return Workspace.model_validate_json(Path(path).read_text(encoding="utf-8"))
