"""
Utility scripts for runtime verification.
"""

from .verify_runtime import verify_runtime

__all__ = ["verify_runtime"]
