"""
Subfinder - passive subdomain enumeration.
"""

from .subfinder_tool import definition

__all__ = ["definition"]
