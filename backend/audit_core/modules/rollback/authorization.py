"""Rollback authorization.

Permission computation belongs to the host application; the engine only
asks a ``RollbackAuthorizer``. The default authorizer grants rollback when
the actor holds the configured gate, any configured role, or any configured
permission.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from audit_core.core.config import RollbackPermissionSettings, get_settings
from audit_core.db.models import HistoryRecord


@dataclass(frozen=True)
class Actor:
    """The principal requesting a rollback."""

    id: str
    name: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    gates: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        actor_id: str | int,
        *,
        name: str | None = None,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
        gates: Iterable[str] = (),
    ) -> Actor:
        return cls(
            id=str(actor_id),
            name=name,
            roles=frozenset(roles),
            permissions=frozenset(permissions),
            gates=frozenset(gates),
        )


class RollbackAuthorizer(Protocol):
    def can_rollback(self, actor: Actor, history: HistoryRecord) -> bool: ...

    def can_restore_fields(
        self, actor: Actor, history: HistoryRecord, fields: Iterable[str]
    ) -> bool: ...


class ConfiguredRollbackAuthorizer:
    """Grant rollback from ``history.rollback_permissions``."""

    def __init__(self, permissions: RollbackPermissionSettings | None = None) -> None:
        self._permissions = permissions or get_settings().history.rollback_permissions

    def can_rollback(self, actor: Actor, history: HistoryRecord) -> bool:
        rules = self._permissions
        if rules.gate and rules.gate in actor.gates:
            return True
        if actor.roles.intersection(rules.roles):
            return True
        return bool(actor.permissions.intersection(rules.permissions))

    def can_restore_fields(
        self, actor: Actor, history: HistoryRecord, fields: Iterable[str]
    ) -> bool:
        return True
