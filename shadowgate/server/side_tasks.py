"""
Fire-and-forget side calls (geolocation lookups, webhook notifications).

Work runs on a small thread pool with bounded HTTP timeouts. Failures are
logged and never reach the request that scheduled them.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

import requests

from shadowgate.server.request_meta import is_private_ip


class SideTaskDispatcher:
    """Runs side calls off the request path."""

    def __init__(
        self,
        timeout: float = 3.0,
        max_workers: int = 4,
        geolocation_url: str = "http://ip-api.com/json/{ip}?fields=countryCode",
        geolocation_enabled: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        self.timeout = timeout
        self.geolocation_url = geolocation_url
        self.geolocation_enabled = geolocation_enabled
        self.logger = logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="shadowgate-side"
        )
        self._session = requests.Session()

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        self._executor.submit(self._run, name, func, *args)

    def _run(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception:
            self.logger.exception("Side task %s failed", name)

    def lookup_country(self, ip: str, callback: Callable[[str | None], None]) -> None:
        """Resolve ip to a country code and hand it to callback."""
        if not self.geolocation_enabled or is_private_ip(ip):
            return

        def fetch() -> None:
            try:
                response = self._session.get(
                    self.geolocation_url.format(ip=ip), timeout=self.timeout
                )
                response.raise_for_status()
                country = response.json().get("countryCode")
            except (requests.RequestException, ValueError) as e:
                self.logger.warning("Geolocation lookup for %s failed: %s", ip, e)
                country = None
            callback(country)

        self.submit("geolocation", fetch)

    def send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        def post() -> None:
            try:
                response = self._session.post(url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                self.logger.warning("Webhook delivery to %s failed: %s", url, e)

        self.submit("webhook", post)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
        self._session.close()
