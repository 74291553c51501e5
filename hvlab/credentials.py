"""Administrative credential resolution.

A credential is held by one run only. It is resolved on demand, passed down
the call chain explicitly, and cleared when the run ends. It is never put in
the process environment, a log line, a file, or an error message.
"""

from __future__ import annotations

import logging
import os
from typing import Awaitable, Callable, Mapping

from pydantic import SecretStr

from hvlab.config import settings
from hvlab.errors import CredentialError

logger = logging.getLogger(__name__)

# Prompt callback: receives the lab name, returns the entered password or None
CredentialPrompt = Callable[[str], Awaitable[str | None]]


class Credential:
    """Run-scoped holder for an admin password.

    Usable as a context manager; leaving the block clears the value.
    """

    def __init__(self, value: str | SecretStr | None = None):
        self._secret: SecretStr | None = None
        self.set(value)

    def set(self, value: str | SecretStr | None) -> None:
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        self._secret = SecretStr(value) if value else None

    def reveal(self) -> str | None:
        return self._secret.get_secret_value() if self._secret is not None else None

    @property
    def is_empty(self) -> bool:
        return self._secret is None

    def clear(self) -> None:
        self._secret = None

    def __enter__(self) -> Credential:
        return self

    def __exit__(self, *exc) -> None:
        self.clear()

    def __repr__(self) -> str:
        return "Credential(<empty>)" if self.is_empty else "Credential(**********)"


async def resolve_credential(
    credential: Credential,
    lab_name: str,
    prompt: CredentialPrompt | None = None,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Fill credential if it is empty.

    Resolution order: value already supplied by the caller, the configured
    environment variable, then the interactive prompt.

    Raises:
        CredentialError: If every source comes up empty
    """
    if not credential.is_empty:
        return

    env = os.environ if environ is None else environ
    from_env = env.get(settings.credential_env_var)
    if from_env and from_env.strip():
        logger.info(f"Using admin credential from {settings.credential_env_var}")
        credential.set(from_env)
        return

    if prompt is not None:
        entered = await prompt(lab_name)
        if entered and entered.strip():
            credential.set(entered)
            return

    raise CredentialError("Deployment requires an admin password: no credential provided")
