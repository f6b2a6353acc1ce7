"""Persisted WhatsApp Web session directory (LocalAuth layout).

The bridge stores the browser profile under ``<auth_path>/session-<client_id>``.
A bridge that crashed mid-run leaves Chromium's singleton lock files behind,
and the next launch refuses to open the same profile until they are removed.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Files Chromium creates in the profile root while a browser owns it
STALE_LOCK_FILES = (
    "SingletonLock",
    "SingletonCookie",
    "SingletonSocket",
    "DevToolsActivePort",
    "lockfile",
)


def session_dir(auth_path: str | Path, client_id: str) -> Path:
    """Profile directory for a client id."""
    name = f"session-{client_id}" if client_id else "session"
    return Path(auth_path) / name


def ensure_auth_dir(auth_path: str | Path) -> Path:
    """Create the auth root if it does not exist yet."""
    root = Path(auth_path)
    if not root.exists():
        root.mkdir(parents=True, exist_ok=True)
        logger.info("Created auth directory: %s", root)
    return root


def clear_stale_locks(auth_path: str | Path, client_id: str) -> list[Path]:
    """Delete leftover lock files from the session profile.

    Lock files may be dangling symlinks, so existence is checked with
    is_symlink() as well as exists().
    """
    profile = session_dir(auth_path, client_id)
    removed: list[Path] = []
    if not profile.is_dir():
        return removed

    for name in STALE_LOCK_FILES:
        for candidate in (profile / name, profile / "Default" / name):
            if candidate.is_symlink() or candidate.exists():
                try:
                    candidate.unlink()
                    removed.append(candidate)
                except OSError as e:
                    logger.warning("Could not remove stale lock %s: %s", candidate, e)

    if removed:
        logger.info(
            "Cleared %d stale lock file(s) in %s", len(removed), profile
        )
    return removed


def wipe_session(auth_path: str | Path, client_id: str) -> bool:
    """Remove the whole profile so the next start asks for a new pairing."""
    profile = session_dir(auth_path, client_id)
    if not profile.exists():
        return False
    shutil.rmtree(profile, ignore_errors=True)
    logger.warning("Wiped persisted session at %s", profile)
    return True
