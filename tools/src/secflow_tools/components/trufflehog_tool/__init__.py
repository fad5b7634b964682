"""
TruffleHog - secret scanning across repositories, buckets and files.
"""

from .trufflehog_tool import definition

__all__ = ["definition"]
