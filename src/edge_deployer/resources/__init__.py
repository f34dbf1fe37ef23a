"""Resource lifecycle managers (databases and secrets)."""

from .config_writer import ConfigWriter, JsonConfigWriter, NullConfigWriter, deep_merge
from .database import DatabaseManager
from .secrets import DISTRIBUTION_FORMATS, SECRET_DEFINITIONS, SecretDefinition, SecretManager

__all__ = [
    "ConfigWriter",
    "JsonConfigWriter",
    "NullConfigWriter",
    "deep_merge",
    "DatabaseManager",
    "SecretManager",
    "SecretDefinition",
    "SECRET_DEFINITIONS",
    "DISTRIBUTION_FORMATS",
]
