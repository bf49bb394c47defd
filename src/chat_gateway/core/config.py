"""
Configuration loading for the chat gateway.
"""

import os
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ProviderSettings:
    """Upstream provider credentials and endpoints."""
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    google_api_key: str = ""
    google_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout: float = 60.0


@dataclass
class BillingSettings:
    """Streaming billing configuration."""
    ledger_url: str = ""  # empty: spend against the in-process ledger store
    batch_threshold: float = 5.0  # credits
    flush_delay: float = 2.0  # seconds of inactivity before a flush
    timeout: float = 15.0
    database_url: Optional[str] = None
    finalize_attempts: int = 3  # reconciliation tries on transient ledger errors
    finalize_retry_delay: float = 0.5  # seconds, grows linearly per attempt


@dataclass
class ToolSettings:
    """Tool registry and execution configuration."""
    registry_url: str = "http://localhost:8091"
    tools_url: str = "http://localhost:8092/functions/v1/tools"
    tools_api_key: str = ""
    timeout: float = 30.0
    summary_chunk_size: int = 400
    summary_chunk_delay: float = 0.05


@dataclass
class OfflineQueueSettings:
    """Client-side offline spend queue configuration."""
    storage_path: str = "~/.chat-gateway/credits_offline_queue.json"
    redis_url: Optional[str] = None
    max_retries: int = 3
    health_url: Optional[str] = None
    probe_interval: float = 15.0


@dataclass
class GatewaySettings:
    """Complete gateway configuration."""
    identity_url: str = "http://localhost:54321"
    identity_api_key: str = ""
    service_role_key: str = ""
    log_level: str = "info"
    otel_endpoint: Optional[str] = None
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    offline: OfflineQueueSettings = field(default_factory=OfflineQueueSettings)


def load_config(config_path: Optional[str] = None) -> GatewaySettings:
    """
    Load gateway configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        Loaded configuration
    """
    if config_path is None:
        config_path = os.environ.get("CHAT_GATEWAY_CONFIG")

    if config_path is None:
        paths = [
            Path("config/chat-gateway/gateway.yaml"),
            Path("/etc/chat-gateway/gateway.yaml"),
            Path.home() / ".config/chat-gateway/gateway.yaml",
        ]
        for p in paths:
            if p.exists():
                config_path = str(p)
                break

    if config_path is None or not Path(config_path).exists():
        logger.warning("No gateway config file found, using environment")
        return _default_config()

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return _parse_config(data)

    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return _default_config()


def _expand(value: Any) -> Any:
    """Expand a ${ENV_VAR} reference."""
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1], "")
    return value


def _section(cls, data: Dict[str, Any], defaults):
    """Build a settings section, keeping defaults for absent keys."""
    values = {}
    for name in defaults.__dataclass_fields__:
        if name in data:
            values[name] = _expand(data[name])
        else:
            values[name] = getattr(defaults, name)
    return cls(**values)


def _parse_config(data: Dict[str, Any]) -> GatewaySettings:
    """Parse configuration dictionary."""
    defaults = _default_config()

    return GatewaySettings(
        identity_url=_expand(data.get("identity_url", defaults.identity_url)),
        identity_api_key=_expand(data.get("identity_api_key", defaults.identity_api_key)),
        service_role_key=_expand(data.get("service_role_key", defaults.service_role_key)),
        log_level=data.get("log_level", defaults.log_level),
        otel_endpoint=_expand(data.get("otel_endpoint", defaults.otel_endpoint)) or None,
        providers=_section(ProviderSettings, data.get("providers", {}), defaults.providers),
        billing=_section(BillingSettings, data.get("billing", {}), defaults.billing),
        tools=_section(ToolSettings, data.get("tools", {}), defaults.tools),
        offline=_section(OfflineQueueSettings, data.get("offline", {}), defaults.offline),
    )


def _default_config() -> GatewaySettings:
    """Return configuration taken from the environment."""
    return GatewaySettings(
        identity_url=os.environ.get("SUPABASE_URL", "http://localhost:54321"),
        identity_api_key=os.environ.get("SUPABASE_ANON_KEY", ""),
        service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
        log_level=os.environ.get("LOG_LEVEL", "info"),
        otel_endpoint=os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        providers=ProviderSettings(
            openai_api_key=os.environ.get("OPENAI_API_KEY_SERVER", ""),
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY_SERVER", ""),
            google_api_key=os.environ.get("GOOGLE_API_KEY_SERVER", ""),
        ),
        billing=BillingSettings(
            ledger_url=os.environ.get("LEDGER_URL", ""),
            database_url=os.environ.get("DATABASE_URL") or None,
        ),
        tools=ToolSettings(
            registry_url=os.environ.get("TOOL_REGISTRY_URL", "http://localhost:8091"),
            tools_url=os.environ.get("TOOLS_URL", "http://localhost:8092/functions/v1/tools"),
            tools_api_key=os.environ.get("SUPABASE_ANON_KEY", ""),
        ),
        offline=OfflineQueueSettings(
            redis_url=os.environ.get("REDIS_URL") or None,
        ),
    )
