"""Boolean guards over an Ability, for protecting routes and operations."""

from dataclasses import dataclass
from typing import Literal, Union

from rbac_engine.ability.engine import Ability, split_key
from rbac_engine.common.exceptions import ValidationError
from rbac_engine.store.models import permission_key


@dataclass(frozen=True)
class PermissionDescriptor:
    action: str
    subject: str

    @classmethod
    def parse(cls, key: str) -> "PermissionDescriptor":
        parts = split_key(key)
        if parts is None:
            raise ValidationError(f"Malformed permission key: {key!r}")
        subject, action = parts
        return cls(action=action, subject=subject)

    @property
    def key(self) -> str:
        return permission_key(self.subject, self.action)

    def allows(self, ability: Ability) -> bool:
        return ability.can(self.action, self.subject)

    def missing(self, ability: Ability) -> list[str]:
        return [] if self.allows(ability) else [self.key]


@dataclass(frozen=True)
class Guard:
    """All-of or any-of over descriptors and nested guards.

    An empty ``all`` guard allows everything; an empty ``any`` guard denies.
    """

    mode: Literal["all", "any"]
    items: tuple[Union[PermissionDescriptor, "Guard"], ...]

    def allows(self, ability: Ability) -> bool:
        results = (item.allows(ability) for item in self.items)
        return all(results) if self.mode == "all" else any(results)

    def missing(self, ability: Ability) -> list[str]:
        """Keys that would have to be granted; empty when the guard allows."""
        if self.allows(ability):
            return []
        out: list[str] = []
        for item in self.items:
            for key in item.missing(ability):
                if key not in out:
                    out.append(key)
        return out

    def __str__(self) -> str:
        joiner = " & " if self.mode == "all" else " | "
        return "(" + joiner.join(
            item.key if isinstance(item, PermissionDescriptor) else str(item) for item in self.items
        ) + ")"


GuardItem = Union[PermissionDescriptor, Guard, str, tuple[str, str]]


def _coerce(item: GuardItem) -> Union[PermissionDescriptor, Guard]:
    if isinstance(item, (PermissionDescriptor, Guard)):
        return item
    if isinstance(item, str):
        return PermissionDescriptor.parse(item)
    if isinstance(item, tuple) and len(item) == 2:
        action, subject = item
        return PermissionDescriptor(action=action, subject=subject)
    raise ValidationError(f"Cannot build a guard from {item!r}")


def require_all(*items: GuardItem) -> Guard:
    return Guard(mode="all", items=tuple(_coerce(i) for i in items))


def require_any(*items: GuardItem) -> Guard:
    return Guard(mode="any", items=tuple(_coerce(i) for i in items))
