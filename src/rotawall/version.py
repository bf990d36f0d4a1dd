"""Version detection with support for development builds."""

from __future__ import annotations

import os
import subprocess
from importlib import metadata
from pathlib import Path

# Fallback version if nothing else works
_FALLBACK_VERSION = "unknown"

_DISTRIBUTION = "rotawall"


def _get_git_sha() -> str | None:
    """Return the short SHA of the checkout this package lives in, if any."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
            cwd=Path(__file__).parent,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    sha = result.stdout.strip()
    return sha if result.returncode == 0 and sha else None


def get_version() -> str:
    """Get the current version string.

    Priority:
    1. BUILD_VERSION environment variable (set during packaging)
    2. Installed distribution metadata
    3. Git SHA of a source checkout
    4. Fallback to "unknown"
    """
    build_version = os.environ.get("BUILD_VERSION")
    if build_version:
        return build_version.strip()

    try:
        return metadata.version(_DISTRIBUTION)
    except metadata.PackageNotFoundError:
        pass

    sha = _get_git_sha()
    if sha:
        return f"dev ({sha})"
    return _FALLBACK_VERSION


# Cache the version on module load
__version__ = get_version()
