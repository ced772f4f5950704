"""meterd daemon utilities: logging, config, retry, invariants.

Individual modules are imported directly by consumers, e.g.:
    from ..utils.logging_config import StructuredLogger
    from ..utils.config_loader import config_loader

invariants is not re-exported here; it reads through the db package, which
itself imports logging_config from this package.
"""

from .logging_config import setup_logging, StructuredLogger, JSONFormatter
from .config_loader import config_loader, ConfigLoader, LedgerConfig
from .retry import retry_with_backoff

__all__ = [
    "setup_logging", "StructuredLogger", "JSONFormatter",
    "config_loader", "ConfigLoader", "LedgerConfig",
    "retry_with_backoff",
]
