"""
__init__.py für config Modul.
"""

from .file_layout import StoreLayout
from .schema import ServerConfig, default_baseline
from .synthesizer import ConfigSynthesizer
from .storage_backend import FileProfileStore

__all__ = [
    "StoreLayout",
    "ServerConfig",
    "default_baseline",
    "ConfigSynthesizer",
    "FileProfileStore",
]
