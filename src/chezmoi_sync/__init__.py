"""Chezmoi Sync: automatic multi-machine synchronization of chezmoi dotfiles.

This package provides the command-line front end, the background daemon (a
debounced push reactor and a periodic pull timer), and the adapter that
drives git and chezmoi on chezmoi's source tree.
"""

from . import (
    chezmoi_wrapper,
    cli,
    config,
    constants,
    controllers,
    daemon,
    devmode,
    interlock,
    ops,
    outcomes,
    service,
    state,
    status,
    system,
    watcher,
)

__all__ = [
    "chezmoi_wrapper",
    "cli",
    "config",
    "constants",
    "controllers",
    "daemon",
    "devmode",
    "interlock",
    "ops",
    "outcomes",
    "service",
    "state",
    "status",
    "system",
    "watcher",
]
