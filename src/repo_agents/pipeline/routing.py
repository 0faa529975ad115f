"""Compile-time aggregation of triggers and permissions across agents."""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from repo_agents.models import (
    ACTION_FAMILIES,
    AgentDefinition,
    PermissionLevel,
    PermissionSet,
    TriggerFamily,
)


def _union(current: list[str], extra: Iterable[str]) -> list[str]:
    return sorted(set(current).union(extra))


class RoutingTable(BaseModel):
    """Union of every agent's trigger filters and max of their permissions.

    Monotonic: :meth:`add` can only grow the table.
    """

    issues: list[str] = Field(default_factory=list)
    pull_request: list[str] = Field(default_factory=list)
    discussion: list[str] = Field(default_factory=list)
    schedule: list[str] = Field(default_factory=list)
    repository_dispatch: list[str] = Field(default_factory=list)
    workflow_dispatch: bool = False
    families: list[TriggerFamily] = Field(default_factory=list)
    permissions: PermissionSet = Field(default_factory=PermissionSet)

    def action_types(self, family: TriggerFamily) -> list[str]:
        return list(getattr(self, family.value))

    def add(self, agent: AgentDefinition) -> RoutingTable:
        """Return a new table that also covers *agent*."""
        on = agent.triggers
        updates: dict = {}
        for family in ACTION_FAMILIES:
            updates[family.value] = _union(self.action_types(family), on.action_types(family))
        updates["repository_dispatch"] = _union(self.repository_dispatch, on.dispatch_types)

        crons = list(self.schedule)
        crons.extend(c for c in on.crons if c not in crons)
        updates["schedule"] = crons
        updates["workflow_dispatch"] = self.workflow_dispatch or on.manual_dispatch

        families = list(self.families)
        families.extend(f for f in on.families() if f not in families)
        updates["families"] = [f for f in TriggerFamily if f in families]

        updates["permissions"] = PermissionSet(
            **{
                resource: PermissionLevel.highest(level, getattr(agent.permissions, resource))
                for resource, level in self.permissions.levels().items()
            }
        )
        return self.model_copy(update=updates)

    def has_family(self, family: TriggerFamily) -> bool:
        return family in self.families


def aggregate(definitions: Iterable[AgentDefinition]) -> RoutingTable:
    """Fold every definition into one :class:`RoutingTable`."""
    table = RoutingTable()
    for agent in definitions:
        table = table.add(agent)
    return table
