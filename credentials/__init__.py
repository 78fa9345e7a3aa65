"""OAuth credential persistence."""

from .token_store import CredentialStore

__all__ = ["CredentialStore"]
