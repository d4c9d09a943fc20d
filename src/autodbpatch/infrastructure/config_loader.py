"""
Configuration loader module.

Handles loading and validation of JSON configuration files:
- hotfix_config.json: Patch run settings (throttle, media, restart, timeouts)
- credential files: {"username": ..., "password": ...} for OS remoting
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from autodbpatch.hotfix.models import INSTALLER_ARGUMENTS, HostCredential

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOLS = ("Default", "Basic", "Negotiate", "NegotiateWithImplicitCredential", "Credssp", "Digest", "Kerberos")
DEFAULT_REFERENCE_URL = "https://dataplat.github.io/assets/dbatools-buildref-index.json"


class HotfixTimeouts(BaseModel):
    """
    Timeout settings for remote operations.

    Restarts of large SQL Server hosts can take a long time, so the restart
    window is generous by default.
    """

    restart_timeout_seconds: int = Field(
        default=1800,
        description="Seconds to wait for a host to come back after restart",
        ge=30,
        le=14400,
    )

    operation_timeout_seconds: int = Field(
        default=120,
        description="WinRM operation timeout in seconds",
        ge=10,
        le=3600,
    )

    reachability_poll_seconds: int = Field(
        default=15,
        description="Interval between reachability probes after restart",
        ge=1,
        le=300,
    )

    download_timeout_seconds: int = Field(
        default=600,
        description="Timeout in seconds for installer and reference downloads",
        ge=10,
        le=7200,
    )


class HotfixSettings(BaseModel):
    """
    Settings of a patch run.

    Values come from config/hotfix_config.json; CLI options override them.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    throttle: int = Field(default=50, ge=1, le=1000, description="Maximum hosts processed concurrently")
    media_paths: list[str] = Field(default_factory=list, description="Installer repositories (searched recursively)")
    download: bool = Field(default=False, description="Download installers missing from the repositories")
    download_dir: str | None = Field(None, description="Where downloaded installers are stored")
    remote_directory: str = Field(
        default=r"C:\Windows\Temp\AutoDBPatch",
        description="Directory on the host installers are copied to",
    )
    restart: bool = Field(default=False, description="Restart hosts automatically when required")
    continue_: bool = Field(default=False, alias="continue", description="Proceed over a pending reboot")
    what_if: bool = Field(default=False, description="Plan only, change nothing")
    protocol: str = Field(default="Default", description="Preferred remoting authentication")
    fallback_protocol: str = Field(default="Default", description="Authentication offered when the preferred one fails")
    installer_arguments: str = Field(default=INSTALLER_ARGUMENTS, description="Silent patch arguments")
    restart_after_install: bool = Field(default=True, description="Treat every update as requiring a restart")
    build_reference_url: str = Field(default=DEFAULT_REFERENCE_URL, description="Remote build reference")
    build_reference_path: str | None = Field(None, description="Build reference cache file override")
    auto_refresh: bool = Field(default=False, description="Refresh a stale build reference before planning")
    timeouts: HotfixTimeouts = Field(default_factory=HotfixTimeouts)

    @field_validator("protocol", "fallback_protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Normalise protocol names to their canonical spelling."""
        for known in SUPPORTED_PROTOCOLS:
            if v.lower() == known.lower():
                return known
        raise ValueError(f"Unsupported protocol {v!r}; expected one of {', '.join(SUPPORTED_PROTOCOLS)}")


class ConfigLoader:
    """
    Load and validate configuration files.

    Implements schema validation and provides typed access to configuration data.
    """

    def __init__(self, config_dir: str | Path = "config"):
        """
        Initialize config loader.

        Args:
            config_dir: Directory containing configuration files.
                        If "config" (default), resolved relative to the executable when frozen.
        """
        if getattr(sys, "frozen", False) and not Path(config_dir).is_absolute():
            self.config_dir = Path(sys.executable).parent / config_dir
        else:
            self.config_dir = Path(config_dir)

        logger.debug("ConfigLoader initialized with directory: %s", self.config_dir)

    def _load_json_file(self, filepath: Path, required: bool = True) -> dict | None:
        """
        Load and parse a JSON file with robust error handling.

        Args:
            filepath: Absolute or relative path to JSON file
            required: If True, raises exception on error. If False, returns None.

        Returns:
            Parsed JSON as dict, or None if optional file not found

        Raises:
            FileNotFoundError: If required file doesn't exist
            ValueError: If JSON is malformed or empty
            PermissionError: If file cannot be read
        """
        if not filepath.exists():
            if required:
                raise FileNotFoundError(
                    f"Configuration file not found: {filepath}\n"
                    f"Hint: Copy the .example.json file and customize it."
                )
            logger.debug("Optional config not found: %s", filepath)
            return None

        try:
            content = filepath.read_text(encoding="utf-8")
        except PermissionError as e:
            raise PermissionError(
                f"Cannot read config file (permission denied): {filepath}\n"
                f"Hint: Check file permissions or if another process has it locked."
            ) from e

        if not content.strip():
            raise ValueError(
                f"Configuration file is empty: {filepath}\n"
                f"Hint: Add valid JSON content or copy from .example.json"
            )

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Invalid JSON in config file: {filepath}\n"
                f"Error at line {e.lineno}, column {e.colno}: {e.msg}\n"
                f"Hint: Validate JSON syntax. Note: .json files cannot have comments."
            ) from e

    def load_settings(
        self, filename: str | Path = "hotfix_config.json", required: bool = False
    ) -> HotfixSettings:
        """
        Load patch run settings.

        A missing optional file yields the defaults.

        Raises:
            FileNotFoundError: If a required config file doesn't exist
            ValueError: If the file is malformed
            pydantic.ValidationError: If a setting is out of range
        """
        filepath = Path(filename)
        if not filepath.is_absolute() and not filepath.exists():
            filepath = self.config_dir / filename
        logger.info("Loading hotfix settings from: %s", filepath)

        data = self._load_json_file(filepath, required=required)
        if data is None:
            return HotfixSettings()

        settings = HotfixSettings.model_validate(data)
        logger.debug("Loaded settings: throttle=%d, restart=%s", settings.throttle, settings.restart)
        return settings

    def load_credential(self, filepath: str | Path) -> HostCredential:
        """
        Load OS credentials from a JSON file.

        Args:
            filepath: Path to credential file (relative to project root or absolute)

        Returns:
            HostCredential (integrated if the file is missing)
        """
        path = Path(filepath)
        if not path.is_absolute() and not path.exists():
            path = self.config_dir.parent / filepath

        logger.debug("Loading credentials from: %s", path)
        data = self._load_json_file(path, required=False)

        if data is None:
            logger.warning("Credential file not found: %s", filepath)
            return HostCredential()

        return HostCredential(username=data.get("username"), password=data.get("password"))
