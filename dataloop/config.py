"""Global dataloop configuration loaded from ~/.config/dataloop/config.toml."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib  # type: ignore
    except ImportError:
        tomllib = None  # type: ignore


def config_path() -> Path:
    """Location of the user's global config file."""
    return Path.home() / ".config" / "dataloop" / "config.toml"


@dataclass
class GlobalConfig:
    """Global dataloop configuration.

    Config priority (highest wins):
    1. Top-level keys
    2. [default] section
    3. DATALOOP_PROFILE overlay ([profiles.<name>])
    4. Environment variable overrides
    5. Explicit --config file (scalar keys only)
    """

    # Model access
    model: str = ""
    api_base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"
    request_timeout_s: int = 120

    # Follow-up chain
    max_followup_depth: int = 0  # 0 = unlimited, loop ceiling still applies
    auto_followup: bool = True
    max_consecutive_failures: int = 4

    # Loop detection
    loop_history_size: int = 10
    loop_ceiling: int = 8

    # Approval
    min_approval_ms: int = 100

    # Code fingerprints
    fingerprint_full_length: int = 200
    fingerprint_edge_chars: int = 100

    # Result truncation
    stored_result_rows: int = 100
    prompt_result_rows: int = 500
    max_error_code_chars: int = 500

    # Sandbox
    execution_timeout_s: int = 30

    # Transcript
    max_history_turns: int = 40
    store_dir: str = "~/.local/share/dataloop/chats"

    # Profile name (for display/debugging)
    profile: str = "default"

    @property
    def store_path(self) -> Path:
        """``store_dir`` with ``~`` expanded."""
        return Path(self.store_dir).expanduser()

    @property
    def depth_unlimited(self) -> bool:
        return self.max_followup_depth <= 0

    def api_key(self) -> str:
        """Read the API key from the configured environment variable."""
        return os.environ.get(self.api_key_env, "")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def _load_toml_data(cls, path: Path) -> Optional[dict]:
        """Load TOML data, returning None if missing or unparseable."""
        if not path.exists():
            return None

        if tomllib is None:
            return None

        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return None

    @classmethod
    def _extract_base_config(cls, data: dict) -> dict:
        """Top-level scalar keys, then the [default] section on top."""
        config_dict: dict = {}

        for key, value in data.items():
            if key not in ("profiles", "default") and not isinstance(value, dict):
                config_dict[key] = value

        if "default" in data:
            config_dict.update(data["default"])

        return config_dict

    @classmethod
    def _apply_profile_overlay(cls, config_dict: dict, data: dict) -> None:
        """Overlay [profiles.<DATALOOP_PROFILE>] onto *config_dict* in place."""
        profile_name = os.getenv("DATALOOP_PROFILE", "")
        if profile_name and "profiles" in data and profile_name in data["profiles"]:
            config_dict.update(data["profiles"][profile_name])
            config_dict["profile"] = profile_name

    @classmethod
    def _apply_env_overrides(cls, config_dict: dict) -> None:
        """Apply DATALOOP_MODEL / DATALOOP_MAX_DEPTH overrides."""
        if os.environ.get("DATALOOP_MODEL"):
            config_dict["model"] = os.environ["DATALOOP_MODEL"]
        max_depth = os.environ.get("DATALOOP_MAX_DEPTH", "")
        if max_depth:
            try:
                config_dict["max_followup_depth"] = int(max_depth)
            except ValueError:
                pass

    @classmethod
    def _apply_file_overlay(cls, config_dict: dict, overlay_path: Path) -> None:
        """Overlay scalar keys from an explicit config file."""
        data = cls._load_toml_data(overlay_path)
        if data is None:
            return
        for key, value in data.items():
            if not isinstance(value, dict):
                config_dict[key] = value

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        overlay: Optional[Path] = None,
    ) -> "GlobalConfig":
        """Load config with profile and environment support.

        Args:
            path: Global config file. Defaults to ~/.config/dataloop/config.toml.
            overlay: Optional explicit config file with the highest priority.

        Returns:
            GlobalConfig with loaded or default values. Unknown keys are ignored.
        """
        data = cls._load_toml_data(path or config_path())
        if data is None:
            config_dict: dict = {}
        else:
            config_dict = cls._extract_base_config(data)
            cls._apply_profile_overlay(config_dict, data)

        cls._apply_env_overrides(config_dict)

        if overlay:
            cls._apply_file_overlay(config_dict, overlay)

        names = {f.name for f in fields(cls)}
        valid_fields = {k: v for k, v in config_dict.items() if k in names}
        return cls(**valid_fields)


# Global singleton - loaded once at first access
_global_config: Optional[GlobalConfig] = None


def get_global_config() -> GlobalConfig:
    """Get the global configuration singleton."""
    global _global_config
    if _global_config is None:
        _global_config = GlobalConfig.load()
    return _global_config


def reload_global_config(overlay: Optional[Path] = None) -> GlobalConfig:
    """Force reload of global configuration.

    Args:
        overlay: Optional explicit config file applied last.

    Returns:
        Freshly loaded GlobalConfig instance.
    """
    global _global_config
    _global_config = GlobalConfig.load(overlay=overlay)
    return _global_config


def apply_profile(profile_name: str) -> GlobalConfig:
    """Select a profile by setting DATALOOP_PROFILE and reloading."""
    os.environ["DATALOOP_PROFILE"] = profile_name
    return reload_global_config()
