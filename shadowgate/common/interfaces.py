"""
Interfaces and protocols for dependency injection.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol


class IStore(Protocol):
    """Namespaced key/value store with per-entry TTLs.

    Implementations must make every single call atomic with respect to other
    calls on the same store.
    """

    def get(self, namespace: str, key: str) -> dict[str, Any] | None: ...

    def put(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> None: ...

    def insert_unique(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> bool: ...

    def pop(self, namespace: str, key: str) -> dict[str, Any] | None: ...

    def update(
        self,
        namespace: str,
        key: str,
        mutator: Callable[[dict[str, Any] | None], dict[str, Any]],
        ttl: float | None = None,
    ) -> dict[str, Any]: ...

    def delete(self, namespace: str, key: str) -> bool: ...

    def values(self, namespace: str) -> list[dict[str, Any]]: ...

    def sweep(self, namespace: str | None = None) -> int: ...


class ILayerGenerator(Protocol):
    """Produces the opaque source text for one loader layer."""

    def generate(self, params: dict[str, Any]) -> str: ...


class ISideTasks(Protocol):
    """Fire-and-forget dispatcher for calls that must not block a response."""

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> None: ...

    def lookup_country(self, ip: str, callback: Callable[[str | None], None]) -> None: ...

    def send_webhook(self, url: str, payload: dict[str, Any]) -> None: ...
