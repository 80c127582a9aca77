"""Identity module."""

from .verifier import IIdentityVerifier, Identity, JWTIdentityVerifier

__all__ = ["IIdentityVerifier", "Identity", "JWTIdentityVerifier"]
