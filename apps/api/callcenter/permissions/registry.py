"""Static catalog of permission keys.

Keys are grouped Module -> Screen -> permission and are matched by exact
string comparison. The catalog is built once at import time and never
mutated afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from callcenter.core.errors import ValidationError


@dataclass(frozen=True)
class PermissionDef:
    key: str
    label: str


@dataclass(frozen=True)
class ScreenDef:
    name: str
    label: str
    permissions: tuple[PermissionDef, ...]


@dataclass(frozen=True)
class ModuleDef:
    name: str
    label: str
    screens: tuple[ScreenDef, ...]


def _screen(name: str, label: str, *permissions: tuple[str, str]) -> ScreenDef:
    return ScreenDef(name=name, label=label, permissions=tuple(PermissionDef(key, text) for key, text in permissions))


PERMISSION_TREE: tuple[ModuleDef, ...] = (
    ModuleDef(
        "dashboard",
        "Dashboard",
        (
            _screen(
                "dashboard",
                "Dashboard",
                ("dashboard.dashboard.view", "View All Dashboard"),
                ("dashboard.dashboard.viewAssigned", "View Assigned Analytics"),
                ("dashboard.team.view", "View Team Analytics"),
                ("dashboard.dashboard.kpiStats", "KPI Stats"),
                ("dashboard.dashboard.cityTable", "City Table"),
                ("dashboard.dashboard.doctorTable", "Doctor Table"),
                ("dashboard.dashboard.campaignAnalytics", "Campaign Analytics"),
                ("dashboard.dashboard.bdPerformance", "BD Performance"),
                ("dashboard.dashboard.dateFilter", "Date Filter"),
            ),
        ),
    ),
    ModuleDef(
        "leads",
        "Leads",
        (
            _screen("search", "Search", ("leads.search.view", "View Search")),
            _screen(
                "all",
                "All Leads",
                ("leads.all.view", "View All Leads"),
                ("leads.team.view", "View Team Leads"),
                ("leads.assigned.view", "View Assigned Leads"),
                ("leads.all.create", "Create Lead"),
                ("leads.all.edit", "Edit Lead"),
                ("leads.all.delete", "Delete Lead"),
                ("leads.all.assign", "Assign Lead"),
                ("leads.all.bulkUpdate", "Bulk Update"),
                ("leads.all.export", "Export Leads"),
                ("leads.all.filters.status", "Filter: Status"),
                ("leads.all.filters.caller", "Filter: Caller"),
                ("leads.all.filters.source", "Filter: Source"),
                ("leads.all.filters.campaign", "Filter: Campaign"),
                ("leads.all.filters.opdStatus", "Filter: OPD Status"),
                ("leads.all.filters.ipdStatus", "Filter: IPD Status"),
                ("leads.all.filters.diagnostics", "Filter: Diagnostics"),
                ("leads.all.filters.followup", "Filter: Follow-up"),
                ("leads.all.filters.date", "Filter: Date"),
                ("leads.all.filters.customFields", "Filter: Custom Fields"),
            ),
            _screen(
                "detail",
                "Lead Detail",
                ("leads.detail.view", "View Lead Detail"),
                ("leads.detail.editFields", "Edit Fields"),
                ("leads.detail.editStatus", "Edit Status"),
                ("leads.detail.addNotes", "Add Notes"),
                ("leads.detail.viewActivities", "View Activities"),
                ("leads.detail.manageBookings", "Manage Bookings"),
                ("leads.detail.whatsapp", "WhatsApp"),
                ("leads.detail.documents", "Documents"),
                ("leads.detail.calls", "Calls"),
                ("leads.detail.defer", "Defer"),
                ("leads.detail.helpRequest", "Help Request"),
            ),
            _screen(
                "duplicates",
                "Duplicates",
                ("leads.duplicates.view", "View Duplicates"),
                ("leads.duplicates.merge", "Merge Duplicates"),
            ),
        ),
    ),
    ModuleDef(
        "campaigns",
        "Campaigns",
        (
            _screen(
                "campaigns",
                "Campaigns",
                ("campaigns.campaigns.view", "View Campaigns"),
                ("campaigns.campaigns.create", "Create Campaign"),
                ("campaigns.campaigns.edit", "Edit Campaign"),
                ("campaigns.campaigns.delete", "Delete Campaign"),
                ("campaigns.campaigns.sync", "Sync Campaign"),
            ),
            _screen(
                "import",
                "Import",
                ("campaigns.import.view", "View Import"),
                ("campaigns.import.import", "Import Leads"),
                ("campaigns.import.mapColumns", "Map Columns"),
                ("campaigns.import.assignCallers", "Assign Callers"),
            ),
        ),
    ),
    ModuleDef(
        "callers",
        "Callers",
        (
            _screen(
                "callers",
                "Callers",
                ("callers.callers.view", "View Callers"),
                ("callers.team.view", "View Team Callers"),
                ("callers.callers.create", "Create Caller"),
                ("callers.callers.edit", "Edit Caller"),
                ("callers.callers.delete", "Delete Caller"),
            ),
            _screen(
                "callerDetail",
                "Caller Detail",
                ("callers.callerDetail.view", "View Caller Detail"),
                ("callers.callerDetail.viewStats", "View Stats"),
            ),
        ),
    ),
    ModuleDef(
        "analytics",
        "Analytics",
        (
            _screen(
                "analytics",
                "Analytics",
                ("analytics.analytics.view", "View Analytics"),
                ("analytics.analytics.statusChart", "Status Chart"),
                ("analytics.analytics.lostReasons", "Lost Reasons"),
                ("analytics.analytics.assigneeChart", "Assignee Chart"),
                ("analytics.analytics.ratingChart", "Rating Chart"),
                ("analytics.analytics.callStatusChart", "Call Status Chart"),
                ("analytics.analytics.callsCountChart", "Calls Count Chart"),
                ("analytics.analytics.customFieldCharts", "Custom Field Charts"),
                ("analytics.analytics.export", "Export Analytics"),
            ),
        ),
    ),
    ModuleDef(
        "reports",
        "Reports",
        (
            _screen(
                "reports",
                "Reports",
                ("reports.reports.view", "View Reports"),
                ("reports.reports.callerPerformance", "Caller Performance"),
            ),
        ),
    ),
    ModuleDef(
        "settings",
        "Settings",
        (
            _screen(
                "fieldSettings",
                "Lead Fields",
                ("settings.fieldSettings.view", "View Lead Fields"),
                ("settings.fieldSettings.create", "Create Field"),
                ("settings.fieldSettings.edit", "Edit Field"),
                ("settings.fieldSettings.delete", "Delete Field"),
                ("settings.fieldSettings.reorder", "Reorder Fields"),
            ),
            _screen(
                "bookingFields",
                "Booking Fields",
                ("settings.bookingFields.view", "View Booking Fields"),
                ("settings.bookingFields.create", "Create Booking Field"),
                ("settings.bookingFields.edit", "Edit Booking Field"),
                ("settings.bookingFields.delete", "Delete Booking Field"),
                ("settings.bookingFields.reorder", "Reorder Booking Fields"),
            ),
            _screen(
                "leadStages",
                "Lead Stages",
                ("settings.leadStages.view", "View Lead Stages"),
                ("settings.leadStages.create", "Create Stage"),
                ("settings.leadStages.edit", "Edit Stage"),
                ("settings.leadStages.delete", "Delete Stage"),
                ("settings.leadStages.reorder", "Reorder Stages"),
            ),
        ),
    ),
    ModuleDef(
        "roles",
        "Roles",
        (
            _screen(
                "roles",
                "Roles",
                ("roles.roles.view", "View Roles"),
                ("roles.roles.create", "Create Role"),
                ("roles.roles.edit", "Edit Role"),
                ("roles.roles.delete", "Delete Role"),
            ),
        ),
    ),
    ModuleDef(
        "teams",
        "Teams",
        (
            _screen(
                "teams",
                "Teams",
                ("teams.teams.view", "View Teams"),
                ("teams.teams.create", "Create Team"),
                ("teams.teams.edit", "Edit Team"),
                ("teams.teams.delete", "Delete Team"),
            ),
        ),
    ),
    ModuleDef(
        "alarms",
        "Alarms",
        (
            _screen(
                "alarms",
                "Alarms",
                ("alarms.alarms.view", "View Alarms"),
                ("alarms.alarms.create", "Create Alarm"),
                ("alarms.alarms.edit", "Edit Alarm"),
                ("alarms.alarms.delete", "Delete Alarm"),
            ),
        ),
    ),
)

DEFAULT_ROLE_KEYS: tuple[str, ...] = (
    "dashboard.dashboard.viewAssigned",
    "dashboard.dashboard.kpiStats",
    "dashboard.dashboard.dateFilter",
    "leads.search.view",
    "leads.assigned.view",
    "leads.detail.view",
    "leads.detail.editFields",
    "leads.detail.editStatus",
    "leads.detail.addNotes",
    "leads.detail.viewActivities",
    "leads.detail.manageBookings",
    "leads.detail.whatsapp",
    "leads.detail.documents",
    "leads.detail.calls",
    "leads.detail.defer",
    "leads.detail.helpRequest",
    "leads.all.filters.status",
    "leads.all.filters.source",
    "leads.all.filters.campaign",
    "leads.all.filters.opdStatus",
    "leads.all.filters.ipdStatus",
    "leads.all.filters.diagnostics",
    "leads.all.filters.followup",
    "leads.all.filters.date",
    "leads.all.filters.customFields",
    "callers.callers.view",
    "campaigns.campaigns.view",
    "settings.fieldSettings.view",
    "settings.bookingFields.view",
    "settings.leadStages.view",
    "alarms.alarms.view",
    "alarms.alarms.create",
    "alarms.alarms.edit",
    "alarms.alarms.delete",
)


class PermissionRegistry:
    def __init__(self, tree: tuple[ModuleDef, ...], default_keys: Iterable[str]) -> None:
        ordered: list[str] = []
        for module in tree:
            for screen in module.screens:
                for permission in screen.permissions:
                    if permission.key in ordered:
                        raise ValueError(f"duplicate permission key in catalog: {permission.key}")
                    ordered.append(permission.key)
        self._tree = tree
        self._ordered_keys = tuple(ordered)
        self._keys = frozenset(ordered)

        defaults = tuple(default_keys)
        unknown = [key for key in defaults if key not in self._keys]
        if unknown:
            raise ValueError(f"default permission keys missing from catalog: {', '.join(unknown)}")
        self._default_keys = frozenset(defaults)

    def list_all_keys(self) -> frozenset[str]:
        return self._keys

    def ordered_keys(self) -> tuple[str, ...]:
        return self._ordered_keys

    def default_keys_for_new_role(self) -> frozenset[str]:
        return self._default_keys

    def is_known(self, key: str) -> bool:
        return key in self._keys

    def invalid_keys(self, keys: Iterable[str]) -> list[str]:
        invalid: list[str] = []
        for key in keys:
            if key not in self._keys and key not in invalid:
                invalid.append(key)
        return invalid

    def validate(self, keys: Iterable[str]) -> frozenset[str]:
        """Return the keys as a set, or raise ValidationError listing every unknown key."""
        materialized = list(keys)
        invalid = self.invalid_keys(materialized)
        if invalid:
            raise ValidationError(
                f"Invalid permission keys: {', '.join(invalid)}",
                details={"invalid_keys": invalid},
            )
        return frozenset(materialized)

    def tree(self) -> list[dict[str, Any]]:
        return [
            {
                "key": module.name,
                "label": module.label,
                "screens": [
                    {
                        "key": screen.name,
                        "label": screen.label,
                        "permissions": [{"key": item.key, "label": item.label} for item in screen.permissions],
                    }
                    for screen in module.screens
                ],
            }
            for module in self._tree
        ]


permission_registry = PermissionRegistry(PERMISSION_TREE, DEFAULT_ROLE_KEYS)
