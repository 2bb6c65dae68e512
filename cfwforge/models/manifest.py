"""Manifest update models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ModuleUpdate(BaseModel):
    """New integrity values for one manifest entry.

    Only these two fields are ever written back into the manifest; every
    other field of the entry is left exactly as it was.
    """

    model_config = ConfigDict(frozen=True)

    hash: str
    size: int = Field(ge=0)
