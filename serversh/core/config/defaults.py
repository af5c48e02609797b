"""
Default configuration document.

Written to disk by ``ConfigStore.init()`` when no configuration file
exists yet, and used as the template for new profiles.
"""

from __future__ import annotations

from serversh.core.constants import (
    DEFAULT_LOG_LEVEL,
    DEFAULT_PARALLEL_JOBS,
    DEFAULT_SSH_PORT,
    DEFAULT_TIMEOUT,
    SERVERSH_VERSION,
    TIMEOUT_MODULE_INSTALL,
)

DEFAULT_CONFIG: dict = {
    "serversh": {
        "version": SERVERSH_VERSION,
        "log_level": DEFAULT_LOG_LEVEL,
        "parallel_jobs": DEFAULT_PARALLEL_JOBS,
        "timeout": DEFAULT_TIMEOUT,
        "module_timeout": TIMEOUT_MODULE_INSTALL,
        "state_dir": "/var/lib/serversh",
        "log_dir": "/var/log/serversh",
    },
    "modules": {
        "enabled": [],
        "disabled": [],
        "auto_dependencies": True,
        "fail_fast": True,
    },
    "system": {
        "hostname": "",
        "timezone": "UTC",
        "locale": "en_US.UTF-8",
    },
    "security": {
        "ssh": {
            "port": DEFAULT_SSH_PORT,
            "password_authentication": False,
            "permit_root_login": False,
            "allowed_groups": ["remotessh"],
        },
        "firewall": {
            "enabled": True,
            "default_policy": "deny",
            "allowed_ports": {"ssh": DEFAULT_SSH_PORT, "http": 80, "https": 443},
        },
        "users": {
            "admin_user": "",
            "create_admin": True,
            "generate_keys": True,
        },
    },
    "container": {
        "docker": {
            "enabled": False,
            "version": "latest",
            "daemon_config": {
                "mtu": 1450,
                "ipv6": True,
                "fixed_cidr_v6": "2001:db8:1::/64",
                "log_driver": "json-file",
                "log_opts": {"max-size": "10m", "max-file": "3"},
                "default_address_pools": [{"base": "172.25.0.0/16", "size": 24}],
            },
        },
    },
    "monitoring": {
        "prometheus": {
            "enabled": False,
            "port": 9100,
            "metrics": ["cpu", "memory", "disk", "network"],
        },
    },
}

# Skeleton written by ``ConfigStore.create_profile()``
PROFILE_TEMPLATE: dict = {
    "serversh": {
        "log_level": DEFAULT_LOG_LEVEL,
        "parallel_jobs": DEFAULT_PARALLEL_JOBS,
        "timeout": DEFAULT_TIMEOUT,
    },
    "modules": {
        "enabled": [],
        "auto_dependencies": True,
        "fail_fast": True,
    },
}
