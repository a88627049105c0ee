"""
Storefront request security and audit pipeline.

This package provides the cross-cutting security layer of the storefront API:
- Fixed-window rate limiting per caller and route class
- Brute-force gating of authentication endpoints
- Session-bound anti-forgery (CSRF) tokens
- Account lock state machine for administrative suspensions
- Best-effort activity recording and security dashboards over the audit trail
"""

__version__ = "1.0.0"
__author__ = "Storefront Team"


def get_version() -> str:
    """Get package version."""
    return __version__


__all__ = ["__version__", "get_version"]
