"""Apply remote file changes ("sync-back") to the local working directory."""

from __future__ import annotations

import binascii
import logging
import os
import posixpath
import tempfile

from ..config import REMOTE_WORKSPACE
from .protocol import FileChange

logger = logging.getLogger(__name__)


def normalize_remote_path(path: str) -> str:
    """Map a remote workspace path to a relative path.

    ``/workspace/src/app.py`` and ``src/app.py`` both become ``src/app.py``.
    Paths outside the workspace keep their leading slash so they are rejected.
    """
    p = path.replace("\\", "/")
    prefix = REMOTE_WORKSPACE.rstrip("/")
    if p == prefix:
        return ""
    if p.startswith(prefix + "/"):
        p = p[len(prefix) + 1 :]
    while "//" in p:
        p = p.replace("//", "/")
    if p.startswith("./"):
        p = p[2:]
    return p


def is_safe_relative_path(path: str) -> bool:
    """True if ``path`` is non-empty, relative and free of ``..`` segments."""
    if not path or path.startswith("/") or os.path.isabs(path):
        return False
    return ".." not in path.replace("\\", "/").split("/")


def safe_join(base_dir: str, relative: str) -> str | None:
    """Resolve ``relative`` under ``base_dir``, or ``None`` if it would escape it.

    Pure path arithmetic: the filesystem is not consulted.
    """
    if not is_safe_relative_path(relative):
        return None
    base = os.path.abspath(base_dir)
    resolved = os.path.normpath(os.path.join(base, *posixpath.normpath(relative).split("/")))
    if resolved == base or not resolved.startswith(base.rstrip(os.sep) + os.sep):
        return None
    return resolved


def _default_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


class SyncBackWriter:
    """Best-effort writer for ``file_change`` messages.

    :meth:`apply` never raises: a failed write is logged and the session
    carries on.

    Args:
        base_dir: Local directory remote paths resolve against (default: cwd).
    """

    def __init__(self, base_dir: str | None = None):
        self.base_dir = os.path.abspath(base_dir or os.getcwd())

    def apply(self, change: FileChange) -> None:
        try:
            self._apply(change)
        except Exception:
            logger.exception("failed to apply %s %s", change.action, change.path)

    def _apply(self, change: FileChange) -> None:
        relative = normalize_remote_path(change.path)
        if not is_safe_relative_path(relative):
            logger.warning("rejected unsafe sync-back path: %r", change.path)
            return
        local_path = safe_join(self.base_dir, relative)
        if local_path is None:
            logger.warning("SECURITY: sync-back path escapes %s: %r", self.base_dir, change.path)
            return

        if change.action == "delete":
            try:
                os.unlink(local_path)
                logger.debug("deleted: %s", relative)
            except FileNotFoundError:
                pass
            return

        if change.content is None:
            logger.debug("write without content: %s", relative)
            return
        try:
            content = change.decoded_content()
        except (binascii.Error, ValueError):
            logger.warning("invalid base64 content for %s", relative)
            return

        self._atomic_write(local_path, content, change.mode)
        logger.debug("wrote: %s (%d bytes)", relative, len(content))

    def _atomic_write(self, path: str, content: bytes, mode: int | None) -> None:
        parent = os.path.dirname(path)
        os.makedirs(parent, exist_ok=True)

        if mode is None:
            try:
                mode = os.stat(path).st_mode
            except FileNotFoundError:
                mode = _default_mode()

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=parent
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(tmp_path, mode & 0o7777)
            except OSError:
                # Some filesystems reject certain mode bits.
                logger.debug("chmod %o failed for %s", mode, path, exc_info=True)
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise


__all__ = ["SyncBackWriter", "normalize_remote_path", "is_safe_relative_path", "safe_join"]
