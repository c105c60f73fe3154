from .config_loader import Config, ConfigurationError, config

__all__ = ['Config', 'ConfigurationError', 'config']
