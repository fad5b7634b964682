"""
SecFlow Tools - security components for the secflow execution runtime.

Components wrap scanners and threat-intel services behind typed ports.
Each one lives in its own ``<name>_tool`` package and exports a
``definition``.

Usage:
    from secflow import component_registry
    from secflow_tools import register_all_components

    register_all_components(component_registry)
"""

__version__ = "0.1.0"

# Credential management
from .credentials import (
    CREDENTIAL_SPECS,
    CredentialError,
    CredentialManager,
    CredentialSpec,
)
from .components import ALL_COMPONENTS, register_all_components

__all__ = [
    # Version
    "__version__",
    # Credentials
    "CredentialManager",
    "CredentialSpec",
    "CredentialError",
    "CREDENTIAL_SPECS",
    # Components
    "ALL_COMPONENTS",
    "register_all_components",
]
