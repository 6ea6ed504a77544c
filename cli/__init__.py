"""
Command line interface for the agent daemon
"""

from .main_cli import main_cli, main

__all__ = ['main_cli', 'main']
