"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the frozen dataclasses of
``approval_config.schema``.  Callers use ``approval_config.load_settings``;
the parse helpers are public for tests.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Unknown top-level sections are rejected so typos do not pass silently.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError``.
* Unknown enum values, bad numbers  -> ``ValueError``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from approval_kernel.domain.approval import (
    ActionType,
    ApprovalStrategy,
    ApproverKind,
    EscalationStrategy,
    Priority,
)
from approval_kernel.domain.policy import (
    DEFAULT_FINGERPRINT_FIELDS,
    ActionPolicy,
    ApproverProfile,
    AutoApprovalRule,
    EscalationRule,
    EscalationSettings,
    HierarchySettings,
)
from approval_kernel.utils.hashing import hash_payload
from approval_config.schema import EngineSettings
from approval_dispatch.domain.types import DispatcherSettings

_SECTIONS = frozenset({"name", "engine", "dispatcher", "escalation", "actions", "approvers", "hierarchy"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file yields ``{}``."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def parse_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name}: not a number: {value!r}") from None


def parse_priority(value: Any) -> Priority:
    """Accept an ordinal (``4``) or a name (``critical``)."""
    if isinstance(value, str) and not value.isdigit():
        try:
            return Priority[value.upper()]
        except KeyError:
            raise ValueError(
                f"Unknown priority '{value}'. Expected one of {[p.name.lower() for p in Priority]}"
            ) from None
    return Priority(int(value))


def parse_dispatcher(data: dict[str, Any]) -> DispatcherSettings:
    defaults = DispatcherSettings()
    return DispatcherSettings(
        backoff_base_seconds=float(data.get("backoff_base_seconds", defaults.backoff_base_seconds)),
        backoff_cap_seconds=float(data.get("backoff_cap_seconds", defaults.backoff_cap_seconds)),
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        poll_interval_seconds=float(data.get("poll_interval_seconds", defaults.poll_interval_seconds)),
        sweep_interval_seconds=float(data.get("sweep_interval_seconds", defaults.sweep_interval_seconds)),
        batch_size=int(data.get("batch_size", defaults.batch_size)),
        lease_seconds=float(data.get("lease_seconds", defaults.lease_seconds)),
        fallback_log_path=str(data.get("fallback_log_path", defaults.fallback_log_path)),
        buffer_capacity=int(data.get("buffer_capacity", defaults.buffer_capacity)),
    )


def parse_escalation_rule(data: dict[str, Any]) -> EscalationRule:
    return EscalationRule(
        name=data["name"],
        priority=int(data["priority"]),
        strategy=EscalationStrategy(data["strategy"]),
        action_types=tuple(ActionType(a).value for a in data.get("action_types", ())),
        min_priority=parse_priority(data["min_priority"]) if data.get("min_priority") is not None else None,
        min_value=parse_decimal(data.get("min_value"), "min_value"),
        max_escalations=int(data["max_escalations"]) if data.get("max_escalations") is not None else None,
        grace_period_hours=(
            float(data["grace_period_hours"]) if data.get("grace_period_hours") is not None else None
        ),
    )


def parse_escalation(data: dict[str, Any]) -> EscalationSettings:
    defaults = EscalationSettings()
    rules = tuple(parse_escalation_rule(r) for r in data.get("rules", ()))
    names = [r.name for r in rules]
    if len(names) != len(set(names)):
        raise ValueError(f"Duplicate escalation rule names: {sorted(names)}")
    return EscalationSettings(
        tick_interval_seconds=float(data.get("tick_interval_seconds", defaults.tick_interval_seconds)),
        grace_period_hours=float(data.get("grace_period_hours", defaults.grace_period_hours)),
        max_escalations=int(data.get("max_escalations", defaults.max_escalations)),
        reminder_window_hours=float(data.get("reminder_window_hours", defaults.reminder_window_hours)),
        default_strategy=EscalationStrategy(data.get("default_strategy", defaults.default_strategy.value)),
        rules=rules,
    )


def parse_action_policy(data: dict[str, Any]) -> ActionPolicy:
    auto = data.get("auto_approval")
    auto_rule = None
    if auto is not None:
        threshold = auto["threshold"]
        if isinstance(threshold, list):
            threshold = tuple(threshold)
        auto_rule = AutoApprovalRule(field=auto["field"], operator=auto["operator"], threshold=threshold)
    return ActionPolicy(
        action_type=ActionType(data["action_type"]).value,
        requires_approval=bool(data.get("requires_approval", True)),
        default_strategy=ApprovalStrategy(data.get("default_strategy", ApprovalStrategy.UNANIMOUS.value)),
        default_deadline_hours=float(data.get("default_deadline_hours", 48)),
        default_priority=parse_priority(data.get("default_priority", Priority.NORMAL)),
        fingerprint_fields=tuple(data.get("fingerprint_fields", DEFAULT_FINGERPRINT_FIELDS)),
        auto_approval=auto_rule,
        description=data.get("description", ""),
    )


def parse_approver_profile(data: dict[str, Any]) -> ApproverProfile:
    scopes = tuple(ActionType(s).value for s in data.get("scopes", ()))
    return ApproverProfile(
        approver_id=data["approver_id"],
        kind=ApproverKind(data.get("kind", ApproverKind.USER.value)),
        max_value=parse_decimal(data.get("max_value"), "max_value"),
        can_delegate=bool(data.get("can_delegate", True)),
        channels=tuple(data.get("channels", ("in_app",))),
        scopes=scopes,
        is_admin=bool(data.get("is_admin", False)),
        members=tuple(data.get("members", ())),
    )


def parse_hierarchy(data: dict[str, Any]) -> HierarchySettings:
    superiors = {str(k): tuple(v or ()) for k, v in (data.get("superiors") or {}).items()}
    pools = {parse_priority(k): tuple(v or ()) for k, v in (data.get("pools") or {}).items()}
    return HierarchySettings(superiors=superiors, pools=pools)


def parse_engine_settings(data: dict[str, Any]) -> EngineSettings:
    unknown = set(data) - _SECTIONS
    if unknown:
        raise ValueError(f"Unknown settings sections: {sorted(unknown)}. Expected: {sorted(_SECTIONS)}")
    engine = data.get("engine") or {}
    defaults = EngineSettings()
    return EngineSettings(
        name=str(data.get("name", defaults.name)),
        operation_timeout_seconds=float(
            engine.get("operation_timeout_seconds", defaults.operation_timeout_seconds)
        ),
        max_write_attempts=int(engine.get("max_write_attempts", defaults.max_write_attempts)),
        dispatcher=parse_dispatcher(data.get("dispatcher") or {}),
        escalation=parse_escalation(data.get("escalation") or {}),
        actions=tuple(parse_action_policy(a) for a in data.get("actions") or ()),
        approvers=tuple(parse_approver_profile(a) for a in data.get("approvers") or ()),
        hierarchy=parse_hierarchy(data.get("hierarchy") or {}),
    )


def compute_checksum(data: dict[str, Any] | EngineSettings) -> str:
    """SHA-256 of the canonical JSON form of raw settings or an EngineSettings."""
    return hash_payload(data)
