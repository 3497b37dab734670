"""Auth module - secure storage of remote store credentials."""

from .keychain import KeychainManager, StoredTokens

__all__ = ["KeychainManager", "StoredTokens"]
