# agentauth/backends.py
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import httpx

from agentauth.config import ConfigError, ProxyConfig

DEFAULT_MAX_BODY_BYTES = 10 * 1024 * 1024  # 10 MB


def _validate_origin(name: str, origin: str) -> str:
    try:
        url = httpx.URL(origin)
    except httpx.InvalidURL as exc:
        raise ValueError(f'Backend "{name}" target is not a valid URL: {exc}') from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f'Backend "{name}" target must be an http(s) origin, got {origin!r}')
    if url.path not in ("", "/") or url.query or url.fragment:
        raise ValueError(f'Backend "{name}" target must not carry a path or query: {origin!r}')
    return origin.rstrip("/")


@dataclass(frozen=True)
class BackendEntry:
    name: str
    target_origin: str
    injected_headers: Mapping[str, str] = field(default_factory=dict)
    allowed_path_patterns: tuple[str, ...] = ()
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES

    def __post_init__(self) -> None:
        if not self.name or "/" in self.name:
            raise ValueError(f"Invalid backend name: {self.name!r}")
        if self.max_body_bytes <= 0:
            raise ValueError(f'Backend "{self.name}" maxBodyBytes must be positive')
        object.__setattr__(self, "target_origin", _validate_origin(self.name, self.target_origin))
        # Header names are case-insensitive; keep them lower-cased so overrides are exact.
        headers = {k.lower(): v for k, v in self.injected_headers.items()}
        object.__setattr__(self, "injected_headers", MappingProxyType(headers))
        object.__setattr__(self, "allowed_path_patterns", tuple(self.allowed_path_patterns))


class BackendTable:
    """Read-only backend lookup. Never mutated once the proxy is running."""

    def __init__(self, entries) -> None:
        table: dict[str, BackendEntry] = {}
        for entry in entries:
            if entry.name in table:
                raise ValueError(f"Duplicate backend name: {entry.name}")
            table[entry.name] = entry
        self._entries = MappingProxyType(table)

    @classmethod
    def from_config(cls, config: ProxyConfig) -> "BackendTable":
        try:
            return cls(
                BackendEntry(
                    name=name,
                    target_origin=backend.target,
                    injected_headers=backend.headers,
                    allowed_path_patterns=tuple(backend.allowed_paths),
                    max_body_bytes=(
                        DEFAULT_MAX_BODY_BYTES
                        if backend.max_body_bytes is None
                        else backend.max_body_bytes
                    ),
                )
                for name, backend in config.backends.items()
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

    def get(self, name: str) -> BackendEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[BackendEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
