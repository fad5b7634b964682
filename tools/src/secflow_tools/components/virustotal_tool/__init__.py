"""
VirusTotal Lookup - inline reputation lookups against the VirusTotal v3 API.
"""

from .virustotal_tool import definition

__all__ = ["definition"]
