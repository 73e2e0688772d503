"""Exceptions raised while bootstrapping a node.

Every class here aborts startup when it escapes provisioning. The CLI turns
them into a ``click.ClickException`` so the operator sees a single line and a
non-zero exit status. Shutdown never raises these; it logs instead.
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for failures that stop the node from starting."""


class BootstrapIOError(BootstrapError, OSError):
    """Key or password storage could not be read or written."""


class CryptoError(BootstrapError):
    """Key material is corrupt, undecryptable, or a signature is unusable."""


class InvalidPasswordError(CryptoError):
    """The password does not unlock an existing key."""


class SigningError(CryptoError):
    """A signer refused or failed to produce a signature."""


class SignerConnectionError(BootstrapError, ConnectionError):
    """The remote signer is unreachable or answered with a transport failure."""

    def __init__(self, message: str, *, endpoint: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.attempts = attempts


class BootstrapValidationError(BootstrapError, ValueError):
    """Operator input is inconsistent or malformed."""


class PasswordMismatchError(BootstrapValidationError):
    """Password and confirmation differ when creating new keys."""


class AccountNotAvailableError(BootstrapValidationError):
    """The requested ethereum address is not held by the remote signer."""


__all__ = [
    "AccountNotAvailableError",
    "BootstrapError",
    "BootstrapIOError",
    "BootstrapValidationError",
    "CryptoError",
    "InvalidPasswordError",
    "PasswordMismatchError",
    "SignerConnectionError",
    "SigningError",
]
