"""
AbuseIPDB Check - inline IP reputation lookups against the AbuseIPDB v2 API.
"""

from .abuseipdb_tool import definition

__all__ = ["definition"]
