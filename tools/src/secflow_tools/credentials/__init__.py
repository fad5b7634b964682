"""
Credential management for SecFlow components.

Usage:
    from secflow_tools.credentials import CredentialManager

    creds = CredentialManager()
    api_key = creds.require("virustotal")
"""

from .base import CredentialError, CredentialManager, CredentialSpec
from .threat_intel import THREAT_INTEL_CREDENTIALS

# Merged registry of all credentials
CREDENTIAL_SPECS = {
    **THREAT_INTEL_CREDENTIALS,
}

__all__ = [
    "CredentialSpec",
    "CredentialManager",
    "CredentialError",
    "CREDENTIAL_SPECS",
    "THREAT_INTEL_CREDENTIALS",
]
