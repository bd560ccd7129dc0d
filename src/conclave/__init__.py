"""
conclave - Local multi-agent experiment orchestration.

Build, doubt, challenge, verify, resolve. Merge what holds up.
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
