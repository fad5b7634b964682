"""
DNSX Resolver - bulk DNS resolution with ProjectDiscovery dnsx.
"""

from .dnsx_tool import definition

__all__ = ["definition"]
