"""
Registry of live models that participate in auditing and rollback.

Models opt in explicitly: nothing is discovered through ORM events. Each
entry names the ORM class, which columns are audited, which of those are
shown in history, and which actions may be rolled back.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect as sa_inspect

DEFAULT_ROLLBACKABLE_ACTIONS: tuple[str, ...] = ("update", "delete")


class UnknownModelError(LookupError):
    """Raised when a model type has not been registered."""


def humanize_field(name: str) -> str:
    """``due_date`` -> ``Due Date``."""
    return name.replace("_", " ").strip().title()


@dataclass(frozen=True)
class AuditableModel:
    """Audit configuration for one live ORM class."""

    name: str
    orm_class: type[Any]
    audit_include: tuple[str, ...] = ()
    audit_exclude: tuple[str, ...] = ()
    history_exclude: tuple[str, ...] = ()
    field_labels: Mapping[str, str] = field(default_factory=dict)
    rollbackable_actions: tuple[str, ...] = DEFAULT_ROLLBACKABLE_ACTIONS
    soft_delete_column: str | None = None

    @property
    def table_name(self) -> str | None:
        return getattr(self.orm_class, "__tablename__", None)

    @property
    def primary_key(self) -> str:
        mapper = sa_inspect(self.orm_class)
        return mapper.get_property_by_column(mapper.primary_key[0]).key

    def column_names(self) -> list[str]:
        return [attr.key for attr in sa_inspect(self.orm_class).column_attrs]

    def auditable_fields(self, global_excludes: Iterable[str] = ()) -> list[str]:
        """Fields whose values are recorded and may be restored."""
        excluded = set(global_excludes) | set(self.audit_exclude)
        candidates = self.audit_include or tuple(self.column_names())
        return [name for name in candidates if name not in excluded]

    def history_fields(self, global_excludes: Iterable[str] = ()) -> list[str]:
        hidden = set(self.history_exclude)
        return [name for name in self.auditable_fields(global_excludes) if name not in hidden]

    def label(self, field_name: str) -> str:
        return self.field_labels.get(field_name) or humanize_field(field_name)

    def snapshot(self, instance: Any, global_excludes: Iterable[str] = ()) -> dict[str, Any]:
        """Current auditable values of a live instance."""
        return {
            name: getattr(instance, name, None) for name in self.auditable_fields(global_excludes)
        }


class ModelRegistry:
    """Lookup of auditable models by ``model_type`` name."""

    def __init__(self, models: Iterable[AuditableModel] = ()) -> None:
        self._models: dict[str, AuditableModel] = {}
        for model in models:
            self.register(model)

    def register(self, model: AuditableModel) -> AuditableModel:
        self._models[model.name] = model
        return model

    def register_model(self, orm_class: type[Any], **options: Any) -> AuditableModel:
        """Register *orm_class* under its class name unless ``name`` is given."""
        name = options.pop("name", orm_class.__name__)
        return self.register(AuditableModel(name=name, orm_class=orm_class, **options))

    def get(self, name: str | None) -> AuditableModel | None:
        if name is None:
            return None
        return self._models.get(name)

    def require(self, name: str) -> AuditableModel:
        model = self._models.get(name)
        if model is None:
            raise UnknownModelError(f"Model type {name!r} is not registered for auditing")
        return model

    def for_instance(self, instance: Any) -> AuditableModel | None:
        for model in self._models.values():
            if isinstance(instance, model.orm_class):
                return model
        return None

    @property
    def names(self) -> list[str]:
        return sorted(self._models)

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __len__(self) -> int:
        return len(self._models)
