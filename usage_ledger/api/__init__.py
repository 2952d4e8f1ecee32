"""
Usage API.

Exposes the usage service operations independent of any transport.
"""

from .usage_service import UsageService

__all__ = ["UsageService"]
