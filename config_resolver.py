"""
config_resolver.py
------------------
FHT Message Service — Effective Configuration Resolver
------------------------------------------------------
Merges the three configuration sources into the single ``EffectiveConfig``
one orchestration cycle runs with.  Precedence, field by field:

    remote config (SystemConfig)  →  local settings (appsettings.json)
        →  UDP discovery (local API endpoint only)  →  hard-coded default

A remote value counts only when it is present and non-blank.  Resolution
never raises: a missing remote config (``None``), blank local values and a
failed discovery all degrade to the next source.  The discovery callable is
only invoked when no explicit endpoint is configured.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from hl7_builder import MessageVariant
from schemas import EmrKind, RemoteConfig
from settings import LocalSettings

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_DELAY_MS = 60000
DEFAULT_LOCAL_API_HOST = "localhost"

DiscoverFn = Callable[[], Optional[str]]


class EffectiveConfig(BaseModel):
    """
    Resolved configuration for one cycle.

    Attributes:
        service_delay_ms:       Delay between poll cycles.
        output_dir_override:    Global output directory for every EMR, or None.
        local_api_endpoint:     Base URL of the local FHT web API.
        message_variant:        Message layout to build.
        emr_connection_strings: EMR kind → database connection string.
    """
    model_config = ConfigDict(frozen=True)

    service_delay_ms:       int = DEFAULT_SERVICE_DELAY_MS
    output_dir_override:    Optional[str] = None
    local_api_endpoint:     str = ""
    message_variant:        MessageVariant = MessageVariant.OBSERVATION_RESULT
    emr_connection_strings: Dict[str, Optional[str]] = Field(default_factory=dict)

    def connection_string(self, emr_kind: str) -> Optional[str]:
        return self.emr_connection_strings.get(emr_kind)


def _text(value: Optional[str]) -> Optional[str]:
    """Return *value* stripped, or None when absent or blank."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _first_text(*values: Optional[str]) -> Optional[str]:
    for value in values:
        text = _text(value)
        if text is not None:
            return text
    return None


def _resolve_variant(*values: Optional[str]) -> MessageVariant:
    for value in values:
        text = _text(value)
        if text is None:
            continue
        variant = MessageVariant.parse(text)
        if variant is not None:
            return variant
        logger.warning("config_resolver: unknown message variant '%s' ignored.", text)
    return MessageVariant.OBSERVATION_RESULT


def _resolve_endpoint(
    remote: RemoteConfig,
    local: LocalSettings,
    discover: Optional[DiscoverFn],
) -> str:
    endpoint = _first_text(remote.fht_web_api_endpoint)
    if endpoint:
        logger.info("config_resolver: using local API endpoint from remote config: %s", endpoint)
        return endpoint

    endpoint = _first_text(local.fht_web_api_endpoint)
    if endpoint:
        logger.info("config_resolver: using local API endpoint from local config: %s", endpoint)
        return endpoint

    if discover is not None:
        try:
            endpoint = _text(discover())
        except OSError as exc:
            logger.error("config_resolver: discovery failed: %s", exc)
            endpoint = None
        if endpoint:
            logger.info("config_resolver: obtained local API endpoint from UDP: %s", endpoint)
            return endpoint

    endpoint = f"https://{DEFAULT_LOCAL_API_HOST}:{local.fht_web_api_port}"
    logger.warning("config_resolver: no local API endpoint found, defaulting to %s", endpoint)
    return endpoint


def resolve_config(
    local: LocalSettings,
    remote: Optional[RemoteConfig] = None,
    discover: Optional[DiscoverFn] = None,
) -> EffectiveConfig:
    """
    Merge remote, local and discovered values into an EffectiveConfig.

    Args:
        local:    Settings loaded at startup.
        remote:   Config from ``SystemConfig``; ``None`` when unavailable.
        discover: Zero-argument callable returning a discovered endpoint or
                  ``None``.  Only called when no endpoint is configured.

    Returns:
        EffectiveConfig: never raises.
    """
    remote = remote or RemoteConfig()

    if remote.service_delay_milliseconds is not None and remote.service_delay_milliseconds >= 0:
        delay = remote.service_delay_milliseconds
    else:
        delay = local.delay_milliseconds

    strings = local.connection_strings
    config = EffectiveConfig(
        service_delay_ms=delay,
        output_dir_override=_first_text(remote.message_output_dir, local.message_output_dir),
        local_api_endpoint=_resolve_endpoint(remote, local, discover),
        message_variant=_resolve_variant(remote.message_variant, local.message_variant),
        emr_connection_strings={
            EmrKind.BEST_PRACTICE.value: _first_text(
                remote.bp_database_connection_string,
                strings.bp_database_connection_string,
            ),
            EmrKind.MEDICAL_DIRECTOR.value: _first_text(
                remote.md_database_hcn_connection_string,
                strings.md_database_hcn_connection_string,
            ),
        },
    )
    logger.debug(
        "config_resolver: delay=%dms override=%s variant=%s.",
        config.service_delay_ms,
        config.output_dir_override or "<none>",
        config.message_variant.value,
    )
    return config
