"""Resolve the password that unlocks (or creates) every node key."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TypeAlias

import click

from antnode.errors import BootstrapIOError, PasswordMismatchError
from antnode.protocols.keystore import KeyStore

PromptFunc: TypeAlias = Callable[[str], str]
EchoFunc: TypeAlias = Callable[[str], None]

# Presence of this key stands in for "keys were created on an earlier run".
SENTINEL_KEY_NAME = "libp2p"

NEW_PASSWORD_NOTICE = (
    "\nThe node's password is used to encrypt the private keys of the node's\n"
    "ethereum account, network identity and messaging keys. Choose a strong\n"
    "password and keep it safe; it is required every time the node starts.\n"
)


def prompt_hidden(label: str) -> str:
    return click.prompt(label, type=str, hide_input=True, default="", show_default=False)


def read_password_file(path: Path) -> str:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise BootstrapIOError(f"read password file {path}: {exc}") from exc
    return raw.strip("\n")


def prompt_existing_password(prompt: PromptFunc = prompt_hidden) -> str:
    return prompt("Password")


def prompt_new_password(
    prompt: PromptFunc = prompt_hidden,
    echo: EchoFunc = click.echo,
) -> str:
    echo(NEW_PASSWORD_NOTICE)
    password = prompt("Password")
    confirmation = prompt("Confirm password")
    if password != confirmation:
        raise PasswordMismatchError("passwords are not the same")
    return password


def resolve_password(
    keystore: KeyStore,
    *,
    password: str | None = None,
    password_file: Path | None = None,
    prompt: PromptFunc = prompt_hidden,
    echo: EchoFunc = click.echo,
) -> str:
    """Return the password for this run.

    Order: explicit value, then password file, then an interactive prompt.
    When prompting, an existing network-identity key means the keys were set
    up before, so the operator is asked once; otherwise a new password is
    requested with confirmation.
    """
    if password:
        return password
    if password_file is not None and str(password_file) != "":
        return read_password_file(password_file)

    if keystore.exists(SENTINEL_KEY_NAME):
        return prompt_existing_password(prompt)
    return prompt_new_password(prompt, echo)


__all__ = [
    "NEW_PASSWORD_NOTICE",
    "SENTINEL_KEY_NAME",
    "prompt_existing_password",
    "prompt_hidden",
    "prompt_new_password",
    "read_password_file",
    "resolve_password",
]
