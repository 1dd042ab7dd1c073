import os
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from pathlib import Path

from dotenv import dotenv_values


class ConfigError(Exception):
    """Configuration error."""
    pass


ENV_PREFIX = 'TUNEPREVIEW_'

DEFAULTS: Dict[str, str] = {
    'SEARCH_LIMIT': '20',
    'COUNTRY': 'US',
    'DEFAULT_QUERY': 'pop music',
    'MPV_PATH': 'mpv',
    'VOLUME': '100',
    'POLL_INTERVAL_MS': '250',
    'HTTP_TIMEOUT': '10',
}


@dataclass(frozen=True)
class PlayerConfig:
    """Resolved player configuration."""

    search_limit: int = 20
    country: str = 'US'
    default_query: str = 'pop music'
    mpv_path: str = 'mpv'
    volume: int = 100
    poll_interval_ms: int = 250
    http_timeout: float = 10.0

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0


class ConfigManager:
    """Manages player configuration from a ``.env`` file and the environment."""

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize config manager."""
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.tunepreview'
        self.env_file = self.config_dir / '.env'

    def load_env_vars(self) -> Dict[str, str]:
        """Load variables from the ``.env`` file."""
        if not self.env_file.exists():
            return {}

        try:
            values = dotenv_values(self.env_file)
        except (IOError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to load .env file {self.env_file}: {e}")

        return {key: value for key, value in values.items() if value is not None}

    def save_env_vars(self, env_vars: Dict[str, str]) -> None:
        """Merge variables into the ``.env`` file."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            existing = self.load_env_vars()
            existing.update(env_vars)
            with open(self.env_file, 'w') as f:
                for key, value in existing.items():
                    f.write(f"{key}={value}\n")
        except IOError as e:
            raise ConfigError(f"Failed to save .env file {self.env_file}: {e}")

    def get_raw_settings(self) -> Dict[str, str]:
        """Get settings keyed without prefix; environment overrides ``.env``."""
        settings = dict(DEFAULTS)
        file_vars = self.load_env_vars()

        for key in DEFAULTS:
            name = ENV_PREFIX + key
            if file_vars.get(name):
                settings[key] = file_vars[name]
            env_value = os.getenv(name)
            if env_value is not None and env_value.strip():
                settings[key] = env_value.strip()

        return settings

    def get_player_config(self) -> PlayerConfig:
        """Resolve and validate the player configuration."""
        raw = self.get_raw_settings()

        search_limit = self._parse_int(raw, 'SEARCH_LIMIT')
        if not 1 <= search_limit <= 200:
            raise ConfigError(f"{ENV_PREFIX}SEARCH_LIMIT must be between 1 and 200, got {search_limit}")

        volume = self._parse_int(raw, 'VOLUME')
        if not 0 <= volume <= 100:
            raise ConfigError(f"{ENV_PREFIX}VOLUME must be between 0 and 100, got {volume}")

        poll_interval_ms = self._parse_int(raw, 'POLL_INTERVAL_MS')
        if poll_interval_ms <= 0:
            raise ConfigError(f"{ENV_PREFIX}POLL_INTERVAL_MS must be positive, got {poll_interval_ms}")

        try:
            http_timeout = float(raw['HTTP_TIMEOUT'])
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}HTTP_TIMEOUT must be a number, got {raw['HTTP_TIMEOUT']!r}")
        if http_timeout <= 0:
            raise ConfigError(f"{ENV_PREFIX}HTTP_TIMEOUT must be positive, got {http_timeout}")

        default_query = raw['DEFAULT_QUERY'].strip()
        if not default_query:
            raise ConfigError(f"{ENV_PREFIX}DEFAULT_QUERY must not be empty")

        return PlayerConfig(
            search_limit=search_limit,
            country=raw['COUNTRY'].upper(),
            default_query=default_query,
            mpv_path=raw['MPV_PATH'],
            volume=volume,
            poll_interval_ms=poll_interval_ms,
            http_timeout=http_timeout,
        )

    def _parse_int(self, raw: Dict[str, str], key: str) -> int:
        try:
            return int(raw[key])
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{key} must be an integer, got {raw[key]!r}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary."""
        summary: Dict[str, Any] = {
            'config_dir': str(self.config_dir),
            'env_file': str(self.env_file),
            'env_file_exists': self.env_file.exists(),
        }
        try:
            summary['settings'] = asdict(self.get_player_config())
            summary['valid'] = True
        except ConfigError as e:
            summary['settings'] = self.get_raw_settings()
            summary['valid'] = False
            summary['error'] = str(e)
        return summary

    def clear_env_vars(self) -> None:
        """Clear .env file."""
        if self.env_file.exists():
            self.env_file.unlink()


# Global instance, created on first use
config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global config manager instance."""
    global config_manager
    if config_manager is None:
        config_manager = ConfigManager()
    return config_manager


def setup_config(config_dir: Optional[str] = None) -> ConfigManager:
    """Setup configuration with custom directory."""
    global config_manager
    config_manager = ConfigManager(config_dir)
    return config_manager
