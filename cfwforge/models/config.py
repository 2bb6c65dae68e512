"""Per-build configuration model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


def default_output_path(input_container: Path, cwd: Path | None = None) -> Path:
    """``<cwd>/<stem>_CFW<suffix>``, the default output location."""
    base = cwd or Path.cwd()
    suffix = input_container.suffix or ".hwfs"
    return base / f"{input_container.stem}_CFW{suffix}"


class BuildConfig(BaseModel):
    """Inputs of one repackaging run.

    Created once by the caller (normally the CLI) and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    input_container: Path
    output_container: Path
    patch_script: Path | None = None
    verbose: bool = False
    keep_work_dir: bool = False

    @classmethod
    def for_input(
        cls,
        input_container: Path,
        *,
        output_container: Path | None = None,
        **kwargs: object,
    ) -> "BuildConfig":
        """Build a config, deriving the output path when not given."""
        input_container = Path(input_container)
        return cls(
            input_container=input_container,
            output_container=output_container or default_output_path(input_container),
            **kwargs,
        )
