"""Built-in role roster for role_group tasks."""
from __future__ import annotations

import dataclasses
import logging
from typing import Any, Iterable

from .models import RoleConfig

logger = logging.getLogger(__name__)

_CHECKLIST = " Keep a checklist of the plan and mark items as they are done."

DEFAULT_ROLES: tuple[RoleConfig, ...] = (
    RoleConfig(
        id="product_manager",
        name="Product Manager",
        prompt=(
            "Define the business value, goals, success metrics, scope and "
            "priorities." + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="team_lead",
        name="Team Lead",
        prompt=(
            "Break the work into developer tasks, assess risks and "
            "dependencies, and align with the analyst." + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="backend_dev",
        name="Backend Developer",
        prompt=(
            "Design the API, data models and backend implementation plan."
            + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="frontend_dev",
        name="Frontend Developer",
        prompt=(
            "Design the UI flows, components and frontend integration."
            + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="analyst",
        name="Analyst",
        prompt=(
            "Clarify requirements, edge cases and acceptance criteria."
            + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="qa",
        name="QA Engineer",
        prompt=(
            "Write a test plan with critical scenarios and regression checks."
            + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="devops",
        name="DevOps Engineer",
        prompt=(
            "Define deployment, CI/CD, observability and infrastructure "
            "requirements." + _CHECKLIST
        ),
    ),
    RoleConfig(
        id="architect",
        name="Architect",
        prompt=(
            "Evaluate the architecture, scaling and trade-offs." + _CHECKLIST
        ),
    ),
)

_ROLE_FIELDS = {f.name for f in dataclasses.fields(RoleConfig)}


def _role_fields(data: dict[str, Any]) -> dict[str, Any]:
    unknown = set(data) - _ROLE_FIELDS
    if unknown:
        logger.warning("Ignoring unknown role keys: %s", ", ".join(sorted(unknown)))
    if not data.get("id"):
        raise ValueError("Role entry requires an 'id'")
    return {k: v for k, v in data.items() if k in _ROLE_FIELDS}


def merge_roles(saved: Iterable[RoleConfig | dict[str, Any]] = ()) -> list[RoleConfig]:
    """Overlay saved roles on the defaults, matched by id.

    Saved fields replace the default's, except that a blank saved name
    keeps the default name. Saved roles with unknown ids are appended
    in their saved order.
    """
    overrides: dict[str, dict[str, Any]] = {}
    order: list[str] = []
    for role in saved:
        fields = (
            dataclasses.asdict(role) if isinstance(role, RoleConfig)
            else _role_fields(role)
        )
        if fields["id"] not in overrides:
            order.append(fields["id"])
        overrides[fields["id"]] = fields

    merged: list[RoleConfig] = []
    for default in DEFAULT_ROLES:
        fields = overrides.get(default.id)
        if fields is None:
            merged.append(dataclasses.replace(default))
            continue
        role = dataclasses.replace(default, **fields)
        role.name = role.name or default.name
        merged.append(role)

    default_ids = {role.id for role in DEFAULT_ROLES}
    for role_id in order:
        if role_id in default_ids:
            continue
        fields = overrides[role_id]
        merged.append(RoleConfig(**{**fields, "name": fields.get("name") or role_id}))
    return merged


def enabled_roles(roles: Iterable[RoleConfig]) -> list[RoleConfig]:
    return [role for role in roles if role.enabled]


def role_prompt(role: RoleConfig, task: str) -> str:
    """Role instructions followed by the shared task."""
    if not role.prompt:
        return task
    return f"{role.prompt}\n\n{task}"
