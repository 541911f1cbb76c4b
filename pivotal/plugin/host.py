"""PluginHost — capabilities, granted permissions and named services."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable

from pivotal.errors import ValidationError

logger = logging.getLogger(__name__)


class PluginHost:
    """The platform side of the plugin boundary.

    Parameters
    ----------
    capabilities:
        Capability names the host offers (``data``, ``notification``, ...).
        Every name in *services* counts as offered too.
    granted_permissions:
        Permissions granted to plugins started on this host.
    services:
        Initial named services, e.g. ``{"data": store, "notification": sink}``.
    """

    def __init__(
        self,
        capabilities: Iterable[str] = (),
        granted_permissions: Iterable[str] = (),
        services: dict[str, Any] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Any] = dict(services or {})
        self.capabilities: set[str] = set(capabilities) | set(self._services)
        self.granted_permissions: set[str] = set(granted_permissions)

    def has_capability(self, name: str) -> bool:
        return name in self.capabilities

    def register_service(self, name: str, service: Any) -> None:
        """Expose *service* under *name*.

        Raises
        ------
        ValidationError
            If another service already uses *name*.
        """
        with self._lock:
            existing = self._services.get(name)
            if existing is not None and existing is not service:
                raise ValidationError(f"Service {name!r} is already registered")
            self._services[name] = service
            self.capabilities.add(name)
        logger.info("Registered service: %s", name)

    def unregister_service(self, name: str) -> None:
        with self._lock:
            self._services.pop(name, None)
            self.capabilities.discard(name)

    def get_service(self, name: str) -> Any | None:
        """Get a service by name."""
        with self._lock:
            return self._services.get(name)

    def list_services(self) -> list[str]:
        with self._lock:
            return sorted(self._services)
