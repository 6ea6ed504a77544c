"""
Utility modules for the agent daemon
"""

from .logging import setup_logging
from .config import load_config, save_config, get_effective_config

__all__ = ['setup_logging', 'load_config', 'save_config', 'get_effective_config']
