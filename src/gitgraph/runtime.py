"""Runtime configuration helpers."""

from __future__ import annotations

import ipaddress
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_SEARCH_WORKERS, STATE_DIR_NAME, STATE_FILE_NAME

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
TRANSPORTS = {"stdio", "streamable-http"}
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class RuntimeSettings:
    """Settings sourced from environment variables; CLI flags override them."""

    git_binary: str | None
    state_file: Path
    actions_file: Path | None
    search_workers: int
    log_level: str


def get_runtime_settings(env: Mapping[str, str] | None = None) -> RuntimeSettings:
    """Validate and return gitgraph settings from environment variables."""
    source = os.environ if env is None else env
    git_binary = source.get("GITGRAPH_GIT_BINARY", "").strip() or None
    actions_file_raw = source.get("GITGRAPH_ACTIONS_FILE", "").strip()
    return RuntimeSettings(
        git_binary=git_binary,
        state_file=default_state_path(source),
        actions_file=Path(actions_file_raw).expanduser() if actions_file_raw else None,
        search_workers=_parse_int_env(
            source=source,
            key="GITGRAPH_SEARCH_WORKERS",
            default=DEFAULT_SEARCH_WORKERS,
            min_value=1,
        ),
        log_level=parse_log_level(source.get("GITGRAPH_LOG_LEVEL", "WARNING"), "GITGRAPH_LOG_LEVEL"),
    )


def default_state_path(env: Mapping[str, str] | None = None) -> Path:
    source = os.environ if env is None else env
    explicit = source.get("GITGRAPH_STATE_FILE", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    config_home = source.get("XDG_CONFIG_HOME", "").strip()
    base = Path(config_home).expanduser() if config_home else Path.home() / ".config"
    return base / STATE_DIR_NAME / STATE_FILE_NAME


def get_runtime_defaults(env: Mapping[str, str] | None = None) -> tuple[str, str, int]:
    """Validate and return MCP transport defaults from environment variables."""
    source = os.environ if env is None else env

    transport_default = source.get("GITGRAPH_MCP_TRANSPORT", "stdio")
    if transport_default not in TRANSPORTS:
        raise ValueError("GITGRAPH_MCP_TRANSPORT must be 'stdio' or 'streamable-http'.")

    host_default = source.get("GITGRAPH_MCP_HOST", "127.0.0.1")

    port_env = source.get("GITGRAPH_MCP_PORT", "8000")
    try:
        port_default = int(port_env)
    except ValueError as exc:
        raise ValueError("GITGRAPH_MCP_PORT must be an integer.") from exc
    if not (1 <= port_default <= 65535):
        raise ValueError("GITGRAPH_MCP_PORT must be between 1 and 65535.")

    validate_streamable_http_binding(
        transport=transport_default,
        host=host_default,
        allow_public_http=_parse_bool_env(source, "GITGRAPH_MCP_ALLOW_PUBLIC_HTTP", default=False),
    )
    return transport_default, host_default, port_default


def validate_streamable_http_binding(transport: str, host: str, allow_public_http: bool) -> None:
    """Refuse to expose action execution on a public interface without opt-in."""
    if transport != "streamable-http":
        return
    if not host.strip():
        raise ValueError("Host must not be empty when using streamable-http transport.")
    if not is_loopback_host(host) and not allow_public_http:
        raise ValueError(
            "Refusing non-loopback streamable-http binding without explicit opt-in. "
            "Set --allow-public-http or GITGRAPH_MCP_ALLOW_PUBLIC_HTTP=true."
        )


def is_loopback_host(host: str) -> bool:
    normalized = host.strip().lower().strip("[]")
    if normalized in {"localhost", "127.0.0.1", "::1"}:
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def parse_log_level(value: str, key: str = "log-level") -> str:
    normalized = str(value).strip().upper() or "WARNING"
    if normalized not in LOG_LEVELS:
        allowed = ", ".join(sorted(LOG_LEVELS))
        raise ValueError(f"{key} must be one of: {allowed}.")
    return normalized


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, parse_log_level(level)), format=LOG_FORMAT)


def _parse_bool_env(source: Mapping[str, str], key: str, default: bool) -> bool:
    raw = source.get(key)
    if raw is None or not str(raw).strip():
        return default
    normalized = str(raw).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean value (true/false).")


def _parse_int_env(
    source: Mapping[str, str],
    key: str,
    default: int,
    min_value: int | None = None,
) -> int:
    raw = source.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer.") from exc
    if min_value is not None and parsed < min_value:
        raise ValueError(f"{key} must be >= {min_value}.")
    return parsed
