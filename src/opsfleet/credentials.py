"""Credentials and the authentication methods offered for them."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence, Tuple, Union

import asyncssh

from .errors import AuthenticationError, ConfigurationError


@dataclass(frozen=True)
class Password:
    """Authenticate with a password, falling back to keyboard-interactive."""

    secret: str = field(repr=False)


@dataclass(frozen=True)
class PrivateKey:
    """Authenticate with a private key given as raw (usually PEM/OpenSSH) bytes."""

    data: bytes = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)


Credential = Union[Password, PrivateKey]

# (prompt text, echo enabled) as sent by the server
Prompt = Tuple[str, bool]


@dataclass(frozen=True)
class PasswordAuth:
    name = "password"

    secret: str = field(repr=False)


@dataclass(frozen=True)
class KeyboardInteractiveAuth:
    """Answers keyboard-interactive challenges that are plainly password prompts.

    Anything else is refused rather than guessed at: an unknown prompt fails
    the attempt with ``AuthenticationError``.
    """

    name = "keyboard-interactive"

    secret: str = field(repr=False)
    username: str
    host: str

    def accepts(self, prompt: str, echo: bool) -> bool:
        if echo:
            return False
        text = prompt.strip()
        return (
            text.lower() == "password:"
            or text == f"{self.username}@{self.host}'s password:"
        )

    def respond(self, prompts: Sequence[Prompt]) -> list[str]:
        answers = []
        for prompt, echo in prompts:
            if not self.accepts(prompt, echo):
                raise AuthenticationError(
                    f"unsupported keyboard-interactive prompt: {prompt!r}"
                )
            answers.append(self.secret)
        return answers


@dataclass(frozen=True)
class PublicKeyAuth:
    name = "publickey"

    key: asyncssh.SSHKey = field(repr=False)


AuthMethod = Union[PasswordAuth, KeyboardInteractiveAuth, PublicKeyAuth]


def auth_methods(
    credential: Credential | None, username: str, host: str
) -> list[AuthMethod]:
    """Return the ordered authentication methods to offer for *credential*."""
    if credential is None:
        raise ConfigurationError("credential not set")

    if isinstance(credential, Password):
        return [
            PasswordAuth(credential.secret),
            KeyboardInteractiveAuth(credential.secret, username, host),
        ]

    if isinstance(credential, PrivateKey):
        try:
            key = asyncssh.import_private_key(credential.data, credential.passphrase)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            raise AuthenticationError(f"failed to parse SSH key: {e}") from e
        return [PublicKeyAuth(key)]

    raise ConfigurationError(
        f"unsupported credential type: {type(credential).__name__}"
    )


def load_key_file(path: str | Path) -> bytes:
    """Read a private key file, rejecting an empty path or an empty file."""
    path_str = str(path).strip()
    if not path_str:
        raise ConfigurationError("key path cannot be empty")

    key_path = Path(path_str).expanduser()
    try:
        key = key_path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"cannot read key file {key_path}: {e}") from e

    if not key:
        raise ConfigurationError(f"key file is empty: {key_path}")
    return key
