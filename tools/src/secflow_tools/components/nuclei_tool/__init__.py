"""
Nuclei Scanner - template-based vulnerability scanning in a container.
"""

from .nuclei_tool import definition

__all__ = ["definition"]
