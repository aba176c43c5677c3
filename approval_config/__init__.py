"""
approval_config -- single public entrypoint for engine configuration.

Responsibility:
    ``load_settings(path)`` is the only way the engine obtains its settings:
    dispatcher tuning, escalation policy and rules, the action registry,
    approver directory seed data and the org hierarchy.

Architecture position:
    Configuration -- sits above ``approval_kernel`` / ``approval_dispatch``
    (whose settings types it aggregates) and below ``approval_services``.
    The kernel MUST NEVER import from ``approval_config``.

Failure modes:
    - ``FileNotFoundError`` -- the given path does not exist.
    - ``ValueError`` / ``KeyError`` -- schema or structural problems.

Audit relevance:
    Every successful load emits an ``approval_config_loaded`` log entry with
    the settings name, source and checksum.
"""

from __future__ import annotations

from pathlib import Path

from approval_config.loader import compute_checksum, load_yaml_file, parse_engine_settings
from approval_config.schema import EngineSettings
from approval_kernel.logging_config import get_logger

_logger = get_logger("config")

# Bundled example configuration set
DEFAULT_SETTINGS_PATH = Path(__file__).parent / "sets" / "default.yaml"


def load_settings(path: str | Path | None = None) -> EngineSettings:
    """Load settings from ``path``; with no path, return built-in defaults.

    Raises:
        FileNotFoundError: if ``path`` does not exist.
        ValueError: if the file does not describe valid settings.
    """
    if path is None:
        settings = EngineSettings()
        source = "builtin"
    else:
        source = str(path)
        settings = parse_engine_settings(load_yaml_file(Path(path)))

    _logger.info(
        "approval_config_loaded",
        extra={
            "config_name": settings.name,
            "source": source,
            "checksum": compute_checksum(settings),
            "action_policy_count": len(settings.actions),
            "approver_count": len(settings.approvers),
            "escalation_rule_count": len(settings.escalation.rules),
        },
    )
    return settings


__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "EngineSettings",
    "compute_checksum",
    "load_settings",
]
