from __future__ import annotations

import os
import re
from typing import Mapping, Protocol


class SecretNotFound(KeyError):
    pass


class SecretStore(Protocol):
    def resolve(self, reference: str) -> str: ...


class MappingSecretStore:
    """Secrets held in memory, keyed by reference."""

    def __init__(self, values: Mapping[str, str] | None = None):
        self._values = dict(values or {})

    def resolve(self, reference: str) -> str:
        try:
            return self._values[reference]
        except KeyError:
            raise SecretNotFound(reference) from None


class EnvSecretStore:
    """Resolve ``db-credentials:password`` from ``BGD_SECRET_DB_CREDENTIALS_PASSWORD``."""

    def __init__(self, prefix: str = "BGD_SECRET_"):
        self.prefix = prefix

    def env_name(self, reference: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]+", "_", reference).strip("_").upper()

    def resolve(self, reference: str) -> str:
        name = self.env_name(reference)
        value = os.getenv(name)
        if value is None:
            raise SecretNotFound(reference)
        return value
