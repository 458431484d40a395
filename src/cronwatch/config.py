from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str
    dashboard_url: str
    admin_email: str


@dataclass(frozen=True)
class RemediationConfig:
    base_url: str
    timeout_seconds: int
    secret_env: str


@dataclass(frozen=True)
class HealthConfig:
    brief_fail_ratio: float
    image_fail_ratio: float
    enrichment_grace_minutes: int
    min_paragraphs: int
    unenriched_fail_ratio: float
    hyperlink_fail_ratio: float
    translation_pass_ratio: float
    translation_warn_ratio: float
    delivery_pass_ratio: float
    delivery_warn_ratio: float
    morning_window_end_hour: int
    brief_lookback_hours: int
    max_detail_lines: int


@dataclass(frozen=True)
class EmailConfig:
    send_hour_local: int
    grace_hours: int
    unknown_timezone_cutoff_hour_utc: int
    send_job_name: str


@dataclass(frozen=True)
class DetectionConfig:
    window_hours: int
    thin_content_threshold: int
    placeholder_patterns: list[str]


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    backoff_minutes: list[int]
    claim_timeout_seconds: int


@dataclass(frozen=True)
class FixCapsConfig:
    images: int
    briefs: int
    emails: int
    thin_content: int
    enrichments: int
    issues_per_run: int


@dataclass(frozen=True)
class FixDelaysConfig:
    image: float
    brief: float
    email: float
    thin_content: float
    enrichment: float


@dataclass(frozen=True)
class FixesConfig:
    caps: FixCapsConfig
    delays_seconds: FixDelaysConfig
    stories_per_thin_fix: int
    background_timeout_seconds: int
    lease_ttl_seconds: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    remediation: RemediationConfig
    health: HealthConfig
    email: EmailConfig
    detection: DetectionConfig
    retry: RetryConfig
    fixes: FixesConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "Cronwatch",
        "timezone": "UTC",
        "dashboard_url": "http://localhost:3000/admin/cron-monitor",
        "admin_email": "",
    },
    "remediation": {
        "base_url": "http://localhost:3000",
        "timeout_seconds": 120,
        "secret_env": "CRON_SECRET",
    },
    "health": {
        "brief_fail_ratio": 0.05,
        "image_fail_ratio": 0.05,
        "enrichment_grace_minutes": 30,
        "min_paragraphs": 2,
        "unenriched_fail_ratio": 0.1,
        "hyperlink_fail_ratio": 0.2,
        "translation_pass_ratio": 0.5,
        "translation_warn_ratio": 0.1,
        "delivery_pass_ratio": 0.95,
        "delivery_warn_ratio": 0.9,
        "morning_window_end_hour": 7,
        "brief_lookback_hours": 36,
        "max_detail_lines": 10,
    },
    "email": {
        "send_hour_local": 7,
        "grace_hours": 1,
        "unknown_timezone_cutoff_hour_utc": 12,
        "send_job_name": "send-daily-brief",
    },
    "detection": {
        "window_hours": 6,
        "thin_content_threshold": 1,
        "placeholder_patterns": [
            r"LOCAL\s*NEWS",
            r"<svg[^>]*xmlns",
            r"\.svg$",
        ],
    },
    "retry": {
        "max_retries": 3,
        "backoff_minutes": [0, 15, 60],
        "claim_timeout_seconds": 600,
    },
    "fixes": {
        "caps": {
            "images": 5,
            "briefs": 50,
            "emails": 10,
            "thin_content": 10,
            "enrichments": 20,
            "issues_per_run": 100,
        },
        "delays_seconds": {
            "image": 3.0,
            "brief": 1.0,
            "email": 2.0,
            "thin_content": 2.0,
            "enrichment": 1.0,
        },
        "stories_per_thin_fix": 3,
        "background_timeout_seconds": 60,
        "lease_ttl_seconds": 900,
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def import_config_file(conn, path: str) -> dict[str, Any]:
    """Merge a YAML file over the defaults and store it as the runtime config."""
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _merge(_deep_copy(DEFAULT_CONFIG), loaded)
    set_runtime_config(conn, merged)
    return merged


def dump_config_yaml(cfg: dict[str, Any]) -> str:
    return yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    retry = cfg["retry"]
    if retry["max_retries"] < 1:
        errors.append("config.runtime.retry.max_retries must be >= 1")
    if not retry["backoff_minutes"]:
        errors.append("config.runtime.retry.backoff_minutes must not be empty")
    if any(value < 0 for value in retry["backoff_minutes"]):
        errors.append("config.runtime.retry.backoff_minutes must be non-negative")
    for key, value in cfg["health"].items():
        if key.endswith("_ratio") and not 0 <= value <= 1:
            errors.append(f"config.runtime.health.{key} must be between 0 and 1")
    for key, value in cfg["fixes"]["caps"].items():
        if value < 0:
            errors.append(f"config.runtime.fixes.caps.{key} must be >= 0")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if isinstance(item, bool) or not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    remediation_cfg = cfg.get("remediation") or {}
    health_cfg = cfg.get("health") or {}
    email_cfg = cfg.get("email") or {}
    detection_cfg = cfg.get("detection") or {}
    retry_cfg = cfg.get("retry") or {}
    fixes_cfg = cfg.get("fixes") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
        dashboard_url=str(app_cfg.get("dashboard_url")),
        admin_email=str(app_cfg.get("admin_email") or ""),
    )

    remediation = RemediationConfig(
        base_url=str(remediation_cfg.get("base_url")),
        timeout_seconds=int(remediation_cfg.get("timeout_seconds")),
        secret_env=str(remediation_cfg.get("secret_env")),
    )

    health = HealthConfig(
        brief_fail_ratio=float(health_cfg.get("brief_fail_ratio")),
        image_fail_ratio=float(health_cfg.get("image_fail_ratio")),
        enrichment_grace_minutes=int(health_cfg.get("enrichment_grace_minutes")),
        min_paragraphs=int(health_cfg.get("min_paragraphs")),
        unenriched_fail_ratio=float(health_cfg.get("unenriched_fail_ratio")),
        hyperlink_fail_ratio=float(health_cfg.get("hyperlink_fail_ratio")),
        translation_pass_ratio=float(health_cfg.get("translation_pass_ratio")),
        translation_warn_ratio=float(health_cfg.get("translation_warn_ratio")),
        delivery_pass_ratio=float(health_cfg.get("delivery_pass_ratio")),
        delivery_warn_ratio=float(health_cfg.get("delivery_warn_ratio")),
        morning_window_end_hour=int(health_cfg.get("morning_window_end_hour")),
        brief_lookback_hours=int(health_cfg.get("brief_lookback_hours")),
        max_detail_lines=int(health_cfg.get("max_detail_lines")),
    )

    email = EmailConfig(
        send_hour_local=int(email_cfg.get("send_hour_local")),
        grace_hours=int(email_cfg.get("grace_hours")),
        unknown_timezone_cutoff_hour_utc=int(email_cfg.get("unknown_timezone_cutoff_hour_utc")),
        send_job_name=str(email_cfg.get("send_job_name")),
    )

    detection = DetectionConfig(
        window_hours=int(detection_cfg.get("window_hours")),
        thin_content_threshold=int(detection_cfg.get("thin_content_threshold")),
        placeholder_patterns=list(detection_cfg.get("placeholder_patterns")),
    )

    retry = RetryConfig(
        max_retries=int(retry_cfg.get("max_retries")),
        backoff_minutes=[int(value) for value in retry_cfg.get("backoff_minutes")],
        claim_timeout_seconds=int(retry_cfg.get("claim_timeout_seconds")),
    )

    caps_cfg = fixes_cfg.get("caps") or {}
    delays_cfg = fixes_cfg.get("delays_seconds") or {}
    fixes = FixesConfig(
        caps=FixCapsConfig(
            images=int(caps_cfg.get("images")),
            briefs=int(caps_cfg.get("briefs")),
            emails=int(caps_cfg.get("emails")),
            thin_content=int(caps_cfg.get("thin_content")),
            enrichments=int(caps_cfg.get("enrichments")),
            issues_per_run=int(caps_cfg.get("issues_per_run")),
        ),
        delays_seconds=FixDelaysConfig(
            image=float(delays_cfg.get("image")),
            brief=float(delays_cfg.get("brief")),
            email=float(delays_cfg.get("email")),
            thin_content=float(delays_cfg.get("thin_content")),
            enrichment=float(delays_cfg.get("enrichment")),
        ),
        stories_per_thin_fix=int(fixes_cfg.get("stories_per_thin_fix")),
        background_timeout_seconds=int(fixes_cfg.get("background_timeout_seconds")),
        lease_ttl_seconds=int(fixes_cfg.get("lease_ttl_seconds")),
    )

    return Config(
        app=app,
        remediation=remediation,
        health=health,
        email=email,
        detection=detection,
        retry=retry,
        fixes=fixes,
    )


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
