"""
Utility functions for terrycore.
"""

from .logger import setup_logging, get_log_dir

__all__ = ["setup_logging", "get_log_dir"]
