"""Resolve role placeholders to concrete identities when a run starts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .definitions import (
    COORDINATOR_ROLE,
    Resolution,
    ResolutionType,
    RolePlaceholder,
    RulesConfig,
)
from .models import Identity

logger = logging.getLogger(__name__)


class ContactDirectory(Protocol):
    """Find (or create) the contact behind an email address."""

    async def contact_for(self, organization_id: str, email: str) -> Identity:
        ...


class RotationCounter(Protocol):
    async def next_rotation(self, definition_id: str, role: str) -> int:
        """Return the current position and advance it by one."""
        ...


class EmailContactDirectory:
    """Use the normalized email itself as the contact id."""

    async def contact_for(self, organization_id: str, email: str) -> Identity:
        return Identity.contact(email.strip().lower())


@dataclass
class ResolutionContext:
    organization_id: str
    starter: Identity
    definition_id: str
    overrides: Mapping[str, Identity] = field(default_factory=dict)
    kickoff_input: Mapping[str, Any] = field(default_factory=dict)
    flow_variables: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ResolutionReport:
    assignments: Dict[str, Identity] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)

    def skip(self, role: str, reason: str) -> None:
        self.unresolved.append(role)
        self.warnings.append(f"{role}: {reason}")


class AssigneeResolver:
    """Turn role placeholders into a partial ``role -> identity`` map.

    Manual overrides win over every strategy. The resolver never raises:
    a role that cannot be resolved is left out and reported as a warning.
    """

    def __init__(
        self,
        directory: Optional[ContactDirectory] = None,
        rotation: Optional[RotationCounter] = None,
    ) -> None:
        self.directory = directory or EmailContactDirectory()
        self.rotation = rotation

    async def resolve(
        self, roles: Sequence[RolePlaceholder], ctx: ResolutionContext
    ) -> ResolutionReport:
        report = ResolutionReport()
        report.assignments[COORDINATOR_ROLE] = ctx.starter
        for role in roles:
            override = ctx.overrides.get(role.name)
            if override is None and role.role_id:
                override = ctx.overrides.get(role.role_id)
            if override is not None:
                report.assignments[role.name] = override
                continue
            try:
                identity = await self._resolve(role.name, role.resolution, ctx)
            except Exception as exc:
                logger.exception(f"Resolving role {role.name!r} failed")
                report.skip(role.name, f"resolution failed ({exc})")
                continue
            if identity is None:
                report.skip(role.name, f"no assignee for {role.resolution.type.value}")
                continue
            report.assignments[role.name] = identity

        for warning in report.warnings:
            logger.warning(f"Unresolved role in {ctx.definition_id}: {warning}")
        return report

    async def _resolve(
        self, role: str, resolution: Resolution, ctx: ResolutionContext
    ) -> Optional[Identity]:
        kind = resolution.type
        if kind == ResolutionType.CONTACT_TBD:
            return None
        if kind == ResolutionType.WORKSPACE_INITIALIZER:
            return ctx.starter
        if kind == ResolutionType.FIXED_CONTACT:
            return await self._contact(resolution.email, ctx)
        if kind == ResolutionType.KICKOFF_FORM_FIELD:
            return await self._contact(_lookup(ctx.kickoff_input, resolution.field_key), ctx)
        if kind == ResolutionType.FLOW_VARIABLE:
            return await self._contact(_lookup(ctx.flow_variables, resolution.variable_key), ctx)
        if kind == ResolutionType.ROUND_ROBIN:
            return await self._round_robin(role, resolution.emails, ctx)
        if kind == ResolutionType.RULES and resolution.config is not None:
            return await self._rules(role, resolution.config, ctx)
        return None

    async def _contact(self, email: Any, ctx: ResolutionContext) -> Optional[Identity]:
        if not email or not isinstance(email, str):
            return None
        return await self.directory.contact_for(ctx.organization_id, email)

    async def _round_robin(
        self, role: str, emails: List[str], ctx: ResolutionContext
    ) -> Optional[Identity]:
        pool = [e for e in emails if e]
        if not pool:
            return None
        if len(pool) == 1 or self.rotation is None:
            return await self._contact(pool[0], ctx)
        position = await self.rotation.next_rotation(ctx.definition_id, role)
        return await self._contact(pool[position % len(pool)], ctx)

    async def _rules(
        self, role: str, config: RulesConfig, ctx: ResolutionContext
    ) -> Optional[Identity]:
        if config.source == "KICKOFF_FORM_FIELD":
            value = _lookup(ctx.kickoff_input, config.field_key)
        elif config.source == "FLOW_VARIABLE":
            value = _lookup(ctx.flow_variables, config.variable_key)
        else:
            # step outputs do not exist yet at run start
            value = None
        source = "" if value is None else str(value)

        for rule in config.rules:
            cond = rule.when
            if cond.equals is not None:
                matches = source.lower() == cond.equals.lower()
            elif cond.contains is not None:
                matches = cond.contains.lower() in source.lower()
            else:
                matches = cond.not_empty and source.strip() != ""
            if matches:
                return await self._resolve(role, rule.then, ctx)
        if config.default is not None:
            return await self._resolve(role, config.default, ctx)
        return None


def _lookup(data: Mapping[str, Any], key: Optional[str]) -> Any:
    if not key:
        return None
    return data.get(key)
