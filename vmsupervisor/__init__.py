"""vm-supervisor package."""

__all__ = [
    "autoshutdown",
    "autostart",
    "cli",
    "command",
    "config",
    "connection",
    "constants",
    "definition",
    "devices",
    "domain",
    "driver",
    "exceptions",
    "hooks",
    "models",
    "monitor",
    "network",
    "pidfile",
    "ports",
    "process",
    "proctable",
    "reconcile",
    "utils",
]
