"""Host detection for the state document."""

from __future__ import annotations

import logging
import platform
import socket

from serversh.core.models.state import SystemInfo

logger = logging.getLogger(__name__)


def detect_system() -> SystemInfo:
    """Collect OS, version, architecture, hostname and kernel of this host."""
    os_name = platform.system().lower() or "unknown"
    version = platform.release() or "unknown"

    try:
        release = platform.freedesktop_os_release()
    except OSError:
        release = {}
    if release:
        os_name = release.get("ID", os_name)
        version = release.get("VERSION_ID", version)

    info = SystemInfo(
        os=os_name,
        version=version,
        arch=platform.machine() or "unknown",
        hostname=socket.gethostname() or "unknown",
        kernel=platform.release() or "unknown",
    )
    logger.debug("Detected system: %s %s (%s) on %s", info.os, info.version, info.arch, info.hostname)
    return info
