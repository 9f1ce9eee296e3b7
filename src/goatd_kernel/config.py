"""Configuration and environment loading."""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Identity
    brand_tag: str = Field(default="goatd", alias="GOATD_BRAND_TAG")
    domain_prefix: str = Field(default="linux", alias="GOATD_DOMAIN_PREFIX")
    fallback_variant: str = Field(default="linux", alias="GOATD_FALLBACK_VARIANT")

    # Toolchain
    clang_version: int = Field(default=190106, alias="GOATD_CLANG_VERSION")

    # Paths
    workspace_root: Path | None = Field(default=None, alias="GOATD_WORKSPACE_ROOT")
    backup_suffix: str = Field(default=".goatd.bak", alias="GOATD_BACKUP_SUFFIX")
    state_file: str = Field(default=".goatd_patch_state.json", alias="GOATD_STATE_FILE")

    log_level: str = Field(default="INFO", alias="GOATD_LOG_LEVEL")

    model_config = {"env_file": ".env", "extra": "ignore", "populate_by_name": True}

    def resolve_workspace(self, script_path: Path) -> Path:
        """Workspace root for metadata sourcing.

        Falls back to the directory holding the build script when
        GOATD_WORKSPACE_ROOT is unset.
        """
        if self.workspace_root is not None:
            return self.workspace_root
        return script_path.resolve().parent


_settings_instance: Settings | None = None


def get_settings() -> Settings:
    """Get application settings singleton."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance
