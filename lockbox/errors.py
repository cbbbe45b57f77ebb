"""
Lockbox error taxonomy.

Every failure raised by the core derives from LockboxError. Nothing here is
retried: all of these are deterministic outcomes, surfaced to the caller as-is.
Decryption failures are all collapsed into InvalidCredentialError so
callers can never learn *why* an authenticated decrypt failed.
"""

from __future__ import annotations


class LockboxError(Exception):
    pass


class NotFoundError(LockboxError):
    pass


class ConflictError(LockboxError):
    pass


class AlreadyExistsError(ConflictError):
    pass


class EnvironmentHasChildrenError(ConflictError):
    pass


class InvalidCredentialError(LockboxError):
    """Wrong key, tampered ciphertext or wrong associated data, never which."""


class InvalidPasswordError(InvalidCredentialError):
    def __init__(self, message: str = "invalid password") -> None:
        super().__init__(message)


class NotInitializedError(LockboxError):
    def __init__(self, message: str = "vault not initialized: run 'lockbox init' first") -> None:
        super().__init__(message)


class AlreadyInitializedError(LockboxError):
    def __init__(self, message: str = "vault already initialized") -> None:
        super().__init__(message)


class VaultLockedError(LockboxError):
    def __init__(self, message: str = "vault is locked: run 'lockbox unlock' first") -> None:
        super().__init__(message)


class SessionExpiredError(VaultLockedError):
    def __init__(self, message: str = "session expired: run 'lockbox unlock' again") -> None:
        super().__init__(message)


class CircularInheritanceError(LockboxError):
    def __init__(self, env_id: str) -> None:
        self.env_id = env_id
        super().__init__(f"circular inheritance detected at environment {env_id}")


class InheritanceDepthError(LockboxError):
    def __init__(self, env_id: str, max_depth: int) -> None:
        self.env_id = env_id
        self.max_depth = max_depth
        super().__init__(
            f"inheritance chain of environment {env_id} is deeper than {max_depth} levels"
        )


class CircularReferenceError(LockboxError):
    def __init__(self, key: str, path: list[str]) -> None:
        self.key = key
        self.path = path
        super().__init__(f"circular reference detected for '{key}': {' -> '.join(path)}")


class UnresolvedReferenceError(LockboxError):
    def __init__(self, key: str, reference: str) -> None:
        self.key = key
        self.reference = reference
        super().__init__(f"unresolved reference in '{key}': ${{{reference}}} not found")


class KeychainUnavailableError(LockboxError):
    def __init__(self, message: str = "keychain not available on this system") -> None:
        super().__init__(message)


class KeychainNotEnabledError(LockboxError):
    def __init__(
        self, message: str = "keychain not enabled: use 'lockbox keychain enable' first"
    ) -> None:
        super().__init__(message)


class InvalidKeyMaterialError(LockboxError, ValueError):
    pass


class InvalidKeyNameError(LockboxError, ValueError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(
            f"invalid key name '{key}': must start with an uppercase letter and contain "
            "only uppercase letters, digits and underscores"
        )


class RestoreError(LockboxError):
    pass
