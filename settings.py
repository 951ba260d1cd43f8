"""
settings.py
-----------
FHT Message Service — Local Settings and Client Credentials
-----------------------------------------------------------
Loads the static configuration the service starts with:

  appsettings.json   Deployment settings (remote API URL, discovery
                     parameters, ports, EMR connection strings, …).
                     Keys are PascalCase, matching the file shipped with the
                     Windows installer.
  .env / environment Optional overrides, loaded with python-dotenv:
                         FHT_SETTINGS_PATH         location of appsettings.json
                         FHT_AWS_URL               remote API base URL
                         FHT_MESSAGE_OUTPUT_DIR    global output directory
                         FHT_LOCAL_API_ENDPOINT    local API base URL
                         FHT_BP_CONNECTION_STRING  BestPractice database
                         FHT_MD_CONNECTION_STRING  MedicalDirector database
  clientconfig.txt   Remote API credentials written by the FHT installer:
                         line 2  User=<user name>
                         line 3  Password=<encrypted password>

Public API:
    LocalSettings             Pydantic model of appsettings.json.
    load_local_settings()     Read + validate + apply env overrides.
    ClientCredentials         User name / decrypted password pair.
    read_client_credentials() Parse clientconfig.txt.

Project: FHT Message Service
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal

from crypto import Decryptor, NullDecryptor, decrypt_or_keep
from errors import ConfigFileError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "appsettings.json"
CLIENT_CONFIG_FILE = "clientconfig.txt"

# Environment variable → LocalSettings attribute
_ENV_OVERRIDES = {
    "FHT_AWS_URL":            "aws_url",
    "FHT_MESSAGE_OUTPUT_DIR": "message_output_dir",
    "FHT_LOCAL_API_ENDPOINT": "fht_web_api_endpoint",
}


class ConnectionStrings(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, frozen=True)

    bp_database_connection_string:     Optional[str] = None
    md_database_hcn_connection_string: Optional[str] = None


class LocalSettings(BaseModel):
    """
    Settings read once at process start.

    Defaults match a stock installation so a minimal file only needs the
    remote URL and software id.
    """

    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    aws_url:               str = ""
    software_id:           int = 0
    delay_milliseconds:    int = Field(default=60000, ge=0)
    multicast_address:     str = ""
    multicast_port:        int = 0
    multicast_target_port: int = 0
    fht_web_api_port:      int = 5001
    fht_web_api_endpoint:  Optional[str] = None
    port:                  int = 5000
    message_output_dir:    Optional[str] = None
    message_variant:       str = "ObservationResult"
    idle_timeout_seconds:  float = Field(default=120.0, gt=0)
    verify_tls:            bool = True
    client_config_path:    Optional[str] = None
    connection_strings:    ConnectionStrings = Field(default_factory=ConnectionStrings)

    @property
    def discovery_enabled(self) -> bool:
        return bool(self.multicast_address and self.multicast_port and self.multicast_target_port)


def _apply_env_overrides(settings: LocalSettings) -> LocalSettings:
    update = {
        attr: os.environ[var]
        for var, attr in _ENV_OVERRIDES.items()
        if os.environ.get(var)
    }

    strings_update = {}
    if os.environ.get("FHT_BP_CONNECTION_STRING"):
        strings_update["bp_database_connection_string"] = os.environ["FHT_BP_CONNECTION_STRING"]
    if os.environ.get("FHT_MD_CONNECTION_STRING"):
        strings_update["md_database_hcn_connection_string"] = os.environ["FHT_MD_CONNECTION_STRING"]
    if strings_update:
        update["connection_strings"] = settings.connection_strings.model_copy(update=strings_update)

    if update:
        logger.debug("settings: environment overrides applied for %s.", sorted(update))
        return settings.model_copy(update=update)
    return settings


def load_local_settings(path: Optional[Union[str, Path]] = None) -> LocalSettings:
    """
    Load ``appsettings.json`` and apply ``.env`` / environment overrides.

    Args:
        path: Settings file.  Defaults to ``$FHT_SETTINGS_PATH`` and then
              ``appsettings.json`` in the working directory.

    Returns:
        LocalSettings: validated, frozen settings.

    Raises:
        ConfigFileError: the file is missing, not JSON, or fails validation.
    """
    load_dotenv()
    settings_path = Path(path or os.getenv("FHT_SETTINGS_PATH") or DEFAULT_SETTINGS_FILE)

    try:
        with open(settings_path, "r", encoding="utf-8-sig") as f:
            raw = json.load(f)
    except OSError as exc:
        raise ConfigFileError(f"Cannot read settings file '{settings_path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigFileError(f"Settings file '{settings_path}' is not valid JSON: {exc}") from exc

    try:
        settings = LocalSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigFileError(f"Settings file '{settings_path}' is invalid: {exc}") from exc

    logger.info("settings: local config obtained from '%s'.", settings_path)
    return _apply_env_overrides(settings)


# ---------------------------------------------------------------------------
# Client credentials
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClientCredentials:
    user_name: Optional[str]
    password:  Optional[str]

    def __repr__(self) -> str:
        return f"ClientCredentials(user_name={self.user_name!r}, password=<hidden>)"


def default_client_config_path() -> Path:
    """``clientconfig.txt`` in the parent of the application directory."""
    return Path(__file__).resolve().parent.parent / CLIENT_CONFIG_FILE


def _value_after(line: str, key: str) -> Optional[str]:
    parts = line.split(key, 1)
    return parts[1] if len(parts) == 2 else None


def read_client_credentials(
    path: Optional[Union[str, Path]] = None,
    decryptor: Optional[Decryptor] = None,
) -> ClientCredentials:
    """
    Parse the remote API credentials from ``clientconfig.txt``.

    Blank lines are ignored.  The second remaining line carries ``User=`` and
    the third ``Password=``; a line without its key yields ``None`` for that
    value.  The password is decrypted, or kept as written when the decryptor
    reports a failure.  Files that are not UTF-8 are read as Windows-1252.

    Raises:
        ConfigFileError: the file cannot be read or has fewer than 3 lines.
    """
    config_path = Path(path) if path else default_client_config_path()
    try:
        raw = config_path.read_bytes()
    except OSError as exc:
        raise ConfigFileError(f"Cannot read client config '{config_path}': {exc}") from exc

    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        # ANSI files written by the Windows installer.
        content = raw.decode("cp1252", errors="replace")
    lines = [line for line in content.splitlines() if line]

    if len(lines) < 3:
        raise ConfigFileError(
            f"Client config '{config_path}' must have a header, User= and Password= lines."
        )

    user_name = _value_after(lines[1], "User=")
    password = _value_after(lines[2], "Password=")
    password = decrypt_or_keep(decryptor or NullDecryptor(), password)
    logger.debug("settings: client config read from '%s' (user=%r).", config_path, user_name)
    return ClientCredentials(user_name=user_name, password=password)
