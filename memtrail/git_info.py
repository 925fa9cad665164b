from __future__ import annotations

import subprocess
from collections.abc import Sequence


def run_command(cmd: Sequence[str], cwd: str | None = None) -> str:
    try:
        out = subprocess.check_output(cmd, cwd=cwd, stderr=subprocess.DEVNULL, text=True)
        return out.strip()
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return ""


def detect_branch(cwd: str) -> str | None:
    branch = run_command(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if not branch or branch == "HEAD":
        return None
    return branch


def detect_repo_root(cwd: str) -> str | None:
    return run_command(["git", "rev-parse", "--show-toplevel"], cwd=cwd) or None
