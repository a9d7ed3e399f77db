from typing import Optional

from sonar_relay.common.utils import get_app_dir
from sonar_relay.config.models import ConfigModel


class ConfigurationService:
    """Configuration service that manages config loading without global state."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[ConfigModel] = None):
        self.config_path = config_path
        self._config = config if config is not None else self._load_config()

    def _load_config(self) -> ConfigModel:
        return ConfigModel.load(self.config_path)

    def get_config(self) -> ConfigModel:
        """Get the configuration instance."""
        return self._config

    def reload_config(self) -> ConfigModel:
        """Reload configuration from file."""
        self._config = self._load_config()
        return self._config


def setup_config() -> None:
    """Create ~/.sonar-relay and a default config.yaml if they don't exist."""
    app_dir = get_app_dir()
    app_dir.mkdir(exist_ok=True)

    config_file = app_dir / 'config.yaml'
    if not config_file.exists():
        ConfigModel().save(str(config_file))
