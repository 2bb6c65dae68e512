"""Tool configuration — env-driven via pydantic-settings.

Reads from a .env file and CFWFORGE_* environment variables.  These are
fixed conventions of the firmware family (manifest layout, nested archive
suffix, compression levels) plus the locations of the external tools.

Examples
--------
Override via environment::

    export CFWFORGE_LOG_LEVEL=DEBUG
    export CFWFORGE_CODEC_COMMAND=/opt/fw/FirmwareHWFS.sh
    export CFWFORGE_TOOLS_DIR=/opt/fw/Custom_HWFS
    export CFWFORGE_KEEP_WORK_DIR=true
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CFWFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # External collaborators
    codec_command: str = "FirmwareHWFS.sh"
    patch_script: Path = Path("patch_U2ACW.sh")
    # Directory a relative patch_script is resolved against; unset means cwd
    tools_dir: Path | None = None
    required_tools: list[str] = []

    # Manifest conventions
    manifest_name: str = "ModuleInfo.json"
    manifest_list_key: str = "ModuleInfo"
    manifest_key_field: str = "fullName"
    manifest_hash_field: str = "md5"
    manifest_hash_algorithm: str = "md5"

    # Nested archives
    nested_suffix: str = ".hwfs"
    gzip_level: int = Field(default=6, ge=0, le=9)
    zip_level: int = Field(default=6, ge=0, le=9)

    # Working directory
    keep_work_dir: bool = False
    work_dir_parent: Path | None = None

    def resolve_patch_script(self) -> Path:
        """The default patch script, anchored at ``tools_dir`` when relative."""
        if self.tools_dir is None or self.patch_script.is_absolute():
            return self.patch_script
        return self.tools_dir / self.patch_script


# Module-level singleton: import as `from cfwforge.config import settings`
settings = ForgeSettings()
