"""Role and ownership authorization for model actions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from engine_errors import InsufficientPermission, NotOwner, OwnershipUnknown
from model_definition import MUTATING_ACTIONS, Action, ModelDefinition, Role, parse_enum


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return parse_enum(Role, self.role) is Role.ADMIN


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Verdict(True)


def _deny(reason: str) -> Verdict:
    return Verdict(False, reason)


def evaluate(definition: ModelDefinition, principal: Principal, action: Action | str, resource_owner: Any = None) -> Verdict:
    """Decide whether ``principal`` may perform ``action`` on ``definition``.

    The role's action set is always checked first, so ownership data never
    turns a missing base permission into an allow. ``resource_owner`` is only
    consulted for update/delete on models with an owner field, and Admin skips
    that step.
    """
    action = parse_enum(Action, action)
    if action is None or action not in definition.actions_for(principal.role):
        return _deny(InsufficientPermission.code)
    if action not in MUTATING_ACTIONS:
        return ALLOW
    if not definition.owner_field:
        return ALLOW
    if principal.is_admin:
        return ALLOW
    if resource_owner is None:
        return _deny(OwnershipUnknown.code)
    if str(resource_owner) == str(principal.id):
        return ALLOW
    return _deny(NotOwner.code)


def needs_owner_lookup(definition: ModelDefinition, principal: Principal, action: Action | str) -> bool:
    """True when ``evaluate`` will need the target record's owner value."""
    action = parse_enum(Action, action)
    return action in MUTATING_ACTIONS and bool(definition.owner_field) and not principal.is_admin
