# Tunnel Provisioner Core Module
from .config import EnforcementMode, Settings, get_settings, is_valid_serial
from .logging import setup_logging

__all__ = [
    "EnforcementMode",
    "Settings",
    "get_settings",
    "is_valid_serial",
    "setup_logging",
]
