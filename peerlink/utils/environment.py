"""Utilities related to the current execution environment."""
from __future__ import annotations

import os


def home_dir() -> str:
    """Return the absolute path to the peerlink home directory.

    If set, `$PEERLINK_HOME` is preferred. Otherwise,
    `$XDG_DATA_HOME/peerlink` is returned where `$XDG_DATA_HOME` defaults
    to `$HOME/.local/share` if unset.
    """
    path = os.environ.get('PEERLINK_HOME')
    if path is None:
        prefix = os.environ.get('XDG_DATA_HOME') or os.path.expanduser(
            '~/.local/share',
        )
        path = os.path.join(prefix, 'peerlink')
    return os.path.abspath(path)


def default_path(filename: str) -> str:
    """Return the path of `filename` inside the peerlink home directory."""
    return os.path.join(home_dir(), filename)
