"""
discovery.py
------------
FHT Message Service — Local API Discovery (UDP multicast)
---------------------------------------------------------
When neither the remote config nor appsettings.json names the local FHT web
API, the service asks for it on the LAN:

  1. Bind a UDP socket to ``MulticastPort`` and join ``MulticastAddress``.
  2. Send a single ``0x01`` byte to ``MulticastAddress:MulticastTargetPort``.
  3. Wait (20 s) for the web API host to answer with its host name (ASCII).
  4. Build ``https://<host name>:<FhtWebApiPort>``.

Any socket error or timeout is logged and yields ``None`` so the config
resolver can fall back to its default.

Project: FHT Message Service
"""

from __future__ import annotations

import logging
import socket
import struct
from typing import Optional

from settings import LocalSettings

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT_S = 20.0
_DISCOVERY_REQUEST = b"\x01"
_MAX_REPLY_BYTES = 1024


def build_local_api_endpoint(host: str, port: int) -> str:
    """``https://<host>:<port>`` for a discovered host name."""
    return f"https://{host.strip()}:{port}"


def discover_local_api_host(
    settings: LocalSettings,
    *,
    timeout: float = DISCOVERY_TIMEOUT_S,
) -> Optional[str]:
    """
    Ask the LAN for the local API host name.

    Returns:
        The host name from the first reply, or ``None`` when discovery is not
        configured, times out, or the socket fails.
    """
    if not settings.discovery_enabled:
        logger.debug("discovery: multicast settings incomplete, skipping UDP lookup.")
        return None

    group = settings.multicast_address
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", settings.multicast_port))
        membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.settimeout(timeout)

        sock.sendto(_DISCOVERY_REQUEST, (group, settings.multicast_target_port))
        data, sender = sock.recvfrom(_MAX_REPLY_BYTES)
    except OSError as exc:
        logger.error("discovery: UDP lookup on %s failed: %s", group, exc)
        return None
    finally:
        sock.close()

    host = data.decode("ascii", errors="ignore").strip("\x00").strip()
    if not host:
        logger.warning("discovery: empty reply from %s.", sender[0])
        return None

    logger.info("discovery: local API host '%s' answered from %s.", host, sender[0])
    return host


def discover_local_api_endpoint(settings: LocalSettings) -> Optional[str]:
    """Discovery fallback used by the config resolver."""
    host = discover_local_api_host(settings)
    if host is None:
        return None
    return build_local_api_endpoint(host, settings.fht_web_api_port)
