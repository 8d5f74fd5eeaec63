from .config_loader import Config, SectionProxy, load_config
from .settings import (
    ConfigError,
    MomentumRule,
    OrderSizing,
    PostBuyBracket,
    RuntimeSettings,
    Settings,
    TickerConfig,
)

__all__ = [
    'Config',
    'ConfigError',
    'MomentumRule',
    'OrderSizing',
    'PostBuyBracket',
    'RuntimeSettings',
    'SectionProxy',
    'Settings',
    'TickerConfig',
    'load_config',
]
