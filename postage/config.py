"""YAML scenario loader for postage runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import PostageConfigError
from .logging_config import get_logger
from .models import (
    MailSenderConfig,
    ScenarioConfig,
    SendProfile,
    TestServerConfig,
    UserGroup,
    UserSide,
)

logger = get_logger("config")

DEFAULT_SCENARIO_ID = "default"
DEFAULT_INTERNAL_PREFIX = "postage_user"
DEFAULT_EXTERNAL_PREFIX = "external"


def _validate_scenario_config(c: ScenarioConfig) -> None:
    """Validate ScenarioConfig bounds. Raises PostageConfigError if invalid."""
    if not c.id or not c.id.strip():
        raise PostageConfigError("id must not be empty")
    if any(ch in c.id for ch in "/\\"):
        raise PostageConfigError("id must not contain path separators", context={"id": c.id})
    if c.duration_minutes < 1:
        raise PostageConfigError("duration_minutes must be >= 1")
    if c.internal_users.count < 0 or c.external_users.count < 0:
        raise PostageConfigError("user counts must be >= 0")
    ts = c.testserver
    if ts.pop3_port > 0 and ts.pop3_fetches_per_minute < 1:
        raise PostageConfigError("pop3_fetches_per_minute must be >= 1 when pop3_port is set")
    if ts.smtp_forwarding_wait_seconds < 0:
        raise PostageConfigError("smtp_forwarding_wait_seconds must be >= 0")
    if ts.timeout_seconds <= 0:
        raise PostageConfigError("timeout_seconds must be > 0")
    for profile in c.profiles:
        for sender in profile.senders:
            if sender.send_per_minute < 0:
                raise PostageConfigError(
                    "send_per_minute must be >= 0", context={"profile": profile.name}
                )
            if sender.size_min_bytes < 0 or sender.size_min_bytes > sender.size_max_bytes:
                raise PostageConfigError(
                    "size_min_bytes must be >= 0 and <= size_max_bytes",
                    context={"profile": profile.name},
                )
        if profile.senders and c.users_for(profile.source).count < 1:
            raise PostageConfigError(
                f"profile sends from {profile.source.value} users but none are configured",
                context={"profile": profile.name},
            )
        if profile.senders and c.users_for(profile.target).count < 1:
            raise PostageConfigError(
                f"profile sends to {profile.target.value} users but none are configured",
                context={"profile": profile.name},
            )


def load_config(path: str | Path) -> ScenarioConfig:
    """Load a scenario from a YAML file.

    Args:
        path: Path to YAML scenario file

    Returns:
        Validated ScenarioConfig instance

    Raises:
        PostageConfigError: If file not found, invalid YAML, or validation fails
    """
    p = Path(path)
    if not p.exists():
        raise PostageConfigError(
            f"Scenario file not found: {path}",
            context={"path": str(path)}
        )

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML scenario file")
        raise PostageConfigError(
            f"Invalid YAML syntax in scenario file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read scenario file")
        raise PostageConfigError(
            f"Cannot read scenario file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    if not isinstance(raw, dict):
        raise PostageConfigError(
            "Scenario must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__}
        )

    try:
        config = scenario_from_dict(raw)
    except PostageConfigError as e:
        raise e.with_context(path=str(path))
    except (TypeError, ValueError, AttributeError) as e:
        raise PostageConfigError(
            f"Invalid scenario value: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    _validate_scenario_config(config)
    logger.debug(
        "Loaded scenario: id=%s, duration=%smin, mails_per_min=%s",
        config.id, config.duration_minutes, config.total_mails_per_minute,
    )
    return config


def scenario_from_dict(raw: dict[str, Any]) -> ScenarioConfig:
    """Build a ScenarioConfig from an already-parsed mapping (no validation)."""
    ts_raw = _section(raw, "testserver")
    testserver = TestServerConfig(
        host=str(ts_raw.get("host", "localhost")),
        smtp_inbound_port=int(ts_raw.get("smtp_inbound_port", 25)),
        pop3_port=int(ts_raw.get("pop3_port", 110)),
        pop3_fetches_per_minute=int(ts_raw.get("pop3_fetches_per_minute", 10)),
        smtp_forwarding_port=int(ts_raw.get("smtp_forwarding_port", 2525)),
        smtp_forwarding_wait_seconds=float(ts_raw.get("smtp_forwarding_wait_seconds", 0)),
        webadmin_url=_optional_str(ts_raw, "webadmin_url"),
        webadmin_token=_optional_str(ts_raw, "webadmin_token"),
        resource_sampling=bool(ts_raw.get("resource_sampling", True)),
        resource_pid=_optional_int(ts_raw, "resource_pid"),
        timeout_seconds=float(ts_raw.get("timeout_seconds", 30)),
    )

    int_raw = _section(raw, "internal_users")
    internal = UserGroup(
        count=int(int_raw.get("count", 10)),
        name_prefix=str(int_raw.get("name_prefix", DEFAULT_INTERNAL_PREFIX)),
        domain=str(int_raw.get("domain", "localhost")),
        password=str(int_raw.get("password", "postage")),
        reuse_existing=bool(int_raw.get("reuse_existing", True)),
    )
    ext_raw = _section(raw, "external_users")
    external = UserGroup(
        count=int(ext_raw.get("count", 3)),
        name_prefix=str(ext_raw.get("name_prefix", DEFAULT_EXTERNAL_PREFIX)),
        domain=str(ext_raw.get("domain", "example.com")),
    )

    profiles: list[SendProfile] = []
    for i, p_raw in enumerate(raw.get("profiles") or []):
        if not isinstance(p_raw, dict):
            raise PostageConfigError("each profile must be a mapping", context={"profile_index": i})
        profiles.append(_profile_from_dict(p_raw, i))

    return ScenarioConfig(
        id=str(raw.get("id", DEFAULT_SCENARIO_ID)).strip(),
        duration_minutes=int(raw.get("duration_minutes", 10)),
        testserver=testserver,
        internal_users=internal,
        external_users=external,
        profiles=profiles,
    )


def validate_scenario_config(config: ScenarioConfig) -> None:
    """Validate ScenarioConfig. Raises PostageConfigError if invalid."""
    _validate_scenario_config(config)


def _profile_from_dict(p_raw: dict[str, Any], index: int) -> SendProfile:
    name = str(p_raw.get("name") or f"profile{index + 1}")
    try:
        source = UserSide(str(p_raw.get("source", "internal")).strip().lower())
        target = UserSide(str(p_raw.get("target", "internal")).strip().lower())
    except ValueError as e:
        raise PostageConfigError(
            "source and target must be 'internal' or 'external'",
            context={"profile": name},
            original_error=e,
        ) from e
    senders = [
        MailSenderConfig(
            send_per_minute=int(s.get("send_per_minute", 1)),
            subject=str(s.get("subject", "postage test mail")),
            size_min_bytes=int(s.get("size_min_bytes", 100)),
            size_max_bytes=int(s.get("size_max_bytes", 1000)),
        )
        for s in (p_raw.get("senders") or [])
    ]
    return SendProfile(name=name, source=source, target=target, senders=senders)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    v = data.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise PostageConfigError(f"{key} must be a mapping", context={"actual_type": type(v).__name__})
    return v


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    v = data.get(key)
    if v is None or str(v).strip() == "":
        return None
    return str(v).strip()


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    v = data.get(key)
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None
