"""SecurityContext — identity used to scope record queries."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from pivotal.errors import ValidationError


class SecurityContext(BaseModel):
    """Tenant/user identity of the caller.

    System contexts bypass row scoping entirely.
    """

    is_system: bool = False
    user_id: str | None = None
    tenant_id: str | None = None

    @classmethod
    def system(cls) -> SecurityContext:
        return cls(is_system=True)

    def scope_key(self) -> str:
        """Stable identity string used to partition cached results."""
        if self.is_system:
            return "system"
        return f"tenant={self.tenant_id or ''};user={self.user_id or ''}"


def scope_conditions(
    context: SecurityContext | None,
    *,
    tenant_field: str = "tenant_id",
    owner_field: str = "owner_id",
    scope_by_owner: bool = False,
) -> dict[str, Any]:
    """Return the equality filters a non-system *context* must satisfy.

    Returns an empty dict for system contexts (or no context at all).

    Raises
    ------
    ValidationError
        If a non-system context carries no identity that could scope it.
    """
    if context is None or context.is_system:
        return {}

    conditions: dict[str, Any] = {}
    if context.tenant_id is not None:
        conditions[tenant_field] = context.tenant_id
    if scope_by_owner and context.user_id is not None:
        conditions[owner_field] = context.user_id

    if not conditions:
        raise ValidationError(
            "Non-system security context has no tenant or user to scope records by."
        )
    return conditions
