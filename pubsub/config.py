"""
Configuration management for the broker and client processes.
Values come from built-in defaults and command-line overrides only.
"""
import json
from typing import Any, Dict, Optional


class Config:
    """Configuration holder with defaults and dot-notation access"""

    # Default configuration values
    DEFAULTS = {
        # Server settings
        'server': {
            'host': '0.0.0.0',
            'backlog': 50,
        },

        # Wire protocol limits
        'protocol': {
            'max_topic_length': 64,
            'max_payload_length': 1024,
            'max_datagram_size': 65507,
        },

        # Client settings (seconds)
        'client': {
            'publish_ack_timeout': 3,
            'subscribe_ack_timeout': 5,
            'terminate_ack_timeout': 2,
            'poll_interval': 1,
        },

        # Logging
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        }
    }

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self._config = self._deep_copy(self.DEFAULTS)

        if overrides:
            for key_path, value in overrides.items():
                self.set(key_path, value)

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.
        Example: config.get('protocol.max_topic_length') returns 64
        """
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        keys = key_path.split('.')
        config = self._config

        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]

        config[keys[-1]] = value

    def _deep_copy(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        else:
            return obj

    def __str__(self) -> str:
        return json.dumps(self._config, indent=2)


# Global configuration instance
_config_instance: Optional[Config] = None

def get_config() -> Config:
    """Get global configuration instance"""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance

def initialize_config(overrides: Optional[Dict[str, Any]] = None) -> Config:
    """Initialize global configuration, applying dot-notation overrides"""
    global _config_instance
    _config_instance = Config(overrides)
    return _config_instance
