"""Helpers for turning free-form argument strings into argv lists."""

from __future__ import annotations

import shlex


def split_arguments(arguments: str | None, posix: bool = True) -> list[str]:
    """Split an argument string the way a shell would.

    With ``posix=False`` backslashes are kept literally (Windows paths) and
    surrounding double quotes are stripped from each token.
    """
    if not arguments or not arguments.strip():
        return []
    if posix:
        return shlex.split(arguments)
    tokens = shlex.split(arguments, posix=False)
    return [t[1:-1] if len(t) >= 2 and t[0] == t[-1] == '"' else t for t in tokens]
