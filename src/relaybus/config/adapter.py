"""Layered configuration lookup: process environment first, then ``.env``.

Keys are looked up without the ``RELAYBUS_`` prefix. ``section("KAFKA")``
returns a view whose keys resolve under ``RELAYBUS_KAFKA_``, so each broker
block reads its own settings with short names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import os
from pathlib import Path
from typing import Protocol

ENV_PREFIX = "RELAYBUS_"


class ConfigSource(Protocol):
    def get(self, key: str) -> str | None: ...


@dataclass(slots=True)
class EnvConfigSource:
    """Reads values directly from environment variables."""

    prefix: str | None = None

    def get(self, key: str) -> str | None:
        return os.getenv(f"{self.prefix}{key}" if self.prefix else key)


def parse_dotenv(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines; ``export`` prefixes, quotes and trailing comments allowed."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if not key:
            continue
        if len(value) >= 2 and value[0] in {'"', "'"} and value[-1] == value[0]:
            value = value[1:-1]
        elif " #" in value:
            value = value.split(" #", 1)[0].rstrip()
        values[key] = value
    return values


@dataclass(slots=True)
class DotEnvConfigSource:
    """Values from a ``.env`` file, read once on first lookup. A missing file is empty."""

    path: Path = Path(".env")
    prefix: str | None = None
    encoding: str = "utf-8"
    _values: dict[str, str] | None = field(default=None, init=False)

    def get(self, key: str) -> str | None:
        if self._values is None:
            try:
                self._values = parse_dotenv(self.path.read_text(encoding=self.encoding))
            except FileNotFoundError:
                self._values = {}
        return self._values.get(f"{self.prefix}{key}" if self.prefix else key)


@dataclass(slots=True)
class ConfigAdapter:
    """First source holding a key wins. Typed getters fall back on blank values."""

    sources: tuple[ConfigSource, ...]
    scope: str = ""

    def section(self, name: str) -> ConfigAdapter:
        return ConfigAdapter(self.sources, f"{self.scope}{name}_")

    def env_name(self, key: str) -> str:
        return f"{ENV_PREFIX}{self.scope}{key}"

    def get(self, key: str, default: str | None = None) -> str | None:
        for source in self.sources:
            value = source.get(f"{self.scope}{key}")
            if value is not None:
                return value
        return default

    def _raw(self, key: str) -> str | None:
        value = self.get(key)
        if value is None or value.strip() == "":
            return None
        return value.strip()

    def get_str(self, key: str, default: str) -> str:
        return self._raw(key) or default

    def get_int(self, key: str, default: int) -> int:
        raw = self._raw(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"{self.env_name(key)} must be an integer, got {raw!r}") from exc

    def get_float(self, key: str, default: float) -> float:
        raw = self._raw(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{self.env_name(key)} must be a number, got {raw!r}") from exc

    def get_bool(self, key: str, default: bool) -> bool:
        raw = self._raw(key)
        if raw is None:
            return default
        lowered = raw.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{self.env_name(key)} must be a boolean, got {raw!r}")

    def get_list(self, key: str, default: list[str]) -> list[str]:
        raw = self._raw(key)
        if raw is None:
            return list(default)
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache
def default_adapter() -> ConfigAdapter:
    dotenv_path = Path(os.getenv("DOTENV_PATH", ".env"))
    return ConfigAdapter(
        (
            EnvConfigSource(prefix=ENV_PREFIX),
            DotEnvConfigSource(path=dotenv_path, prefix=ENV_PREFIX),
        )
    )
