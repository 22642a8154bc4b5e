"""Drag-and-drop file upload over the session socket.

Dropping a file onto a terminal pastes its local path. Those paths mean
nothing on the remote machine, so eligible files are sent over the control
channel instead and the paste is replaced with their remote paths.
"""

from __future__ import annotations

import base64
import logging
import math
import os
import re
import stat
import time
import uuid
from dataclasses import dataclass

from ..config import REMOTE_UPLOAD_DIR
from .protocol import FileUpload, FileUploadChunk

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg"})
DOCUMENT_EXTENSIONS = frozenset({".pdf", ".txt", ".md", ".json", ".xml", ".csv"})
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | DOCUMENT_EXTENSIONS

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".json": "application/json",
    ".xml": "application/xml",
    ".csv": "text/csv",
}

MAX_FILE_SIZE = 10 * 1024 * 1024
# Largest base64 payload sent as a single file_upload message.
CHUNK_SIZE = 256 * 1024
# Pause between chunk messages so one upload does not starve the channel.
CHUNK_DELAY = 0.001

_UNESCAPED_SPACE = re.compile(r"(?<!\\) ")
_ESCAPE = re.compile(r"\\(.)")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class PreparedUpload:
    """A local file read and ready to be sent."""

    local_path: str
    filename: str
    remote_path: str
    mime: str
    content: bytes

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


@dataclass(frozen=True)
class PastePlan:
    """What to send for one paste.

    ``uploads`` is empty when the paste should be forwarded verbatim, in
    which case ``text`` is the original paste; otherwise ``text`` holds the
    remote paths that replace it.
    """

    text: str
    uploads: tuple[PreparedUpload, ...] = ()


def detect_file_paths(text: str) -> list[str]:
    """Return the existing absolute local paths referenced in pasted text.

    Candidates are split on spaces not preceded by a backslash, unescaped
    and ``~``-expanded.
    """
    paths: list[str] = []
    for token in _UNESCAPED_SPACE.split(text.strip()):
        token = token.strip()
        if not token:
            continue
        candidate = os.path.expanduser(_ESCAPE.sub(r"\1", token))
        if not os.path.isabs(candidate):
            continue
        try:
            os.stat(candidate)
        except OSError:
            continue
        paths.append(candidate)
    return paths


def unique_filename(filename: str, *, now: float | None = None) -> str:
    """Make an upload filename safe and unlikely to collide.

    ``my photo (1).png`` becomes ``my-photo-1-<millis>.png``.
    """
    stem, ext = os.path.splitext(os.path.basename(filename))
    stem = _UNSAFE_FILENAME_CHARS.sub("-", stem).strip("-") or "file"
    ext = _UNSAFE_FILENAME_CHARS.sub("", ext)
    millis = int((time.time() if now is None else now) * 1000)
    return f"{stem}-{millis}{ext}"


def mime_type(path: str) -> str:
    return MIME_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")


def is_eligible(path: str) -> bool:
    """Regular file, within the size ceiling, with a supported extension."""
    try:
        st = os.stat(path)
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode) or st.st_size > MAX_FILE_SIZE:
        return False
    return os.path.splitext(path)[1].lower() in SUPPORTED_EXTENSIONS


def prepare_upload(path: str, *, now: float | None = None) -> PreparedUpload | None:
    """Read an eligible file; ``None`` if it is not eligible."""
    if not is_eligible(path):
        return None
    with open(path, "rb") as f:
        content = f.read()
    filename = unique_filename(os.path.basename(path), now=now)
    return PreparedUpload(
        local_path=path,
        filename=filename,
        remote_path=f"{REMOTE_UPLOAD_DIR}/{filename}",
        mime=mime_type(path),
        content=content,
    )


def plan_paste(text: str) -> PastePlan:
    """Decide whether a paste becomes uploads or is forwarded unchanged.

    Uploads happen only when the paste references at least one file and
    every referenced file is eligible; anything else is forwarded verbatim.
    """
    paths = detect_file_paths(text)
    if not paths:
        return PastePlan(text)
    if not all(is_eligible(p) for p in paths):
        logger.debug("paste references ineligible files, forwarding as text")
        return PastePlan(text)

    uploads: list[PreparedUpload] = []
    for path in paths:
        try:
            upload = prepare_upload(path)
        except OSError:
            logger.debug("could not read %s, forwarding paste as text", path, exc_info=True)
            return PastePlan(text)
        if upload is None:
            return PastePlan(text)
        uploads.append(upload)
    logger.debug("found %d files to upload", len(uploads))
    return PastePlan(" ".join(u.remote_path for u in uploads), tuple(uploads))


def build_upload_messages(
    upload: PreparedUpload,
    *,
    upload_id: str | None = None,
    chunk_size: int = CHUNK_SIZE,
) -> list[FileUpload | FileUploadChunk]:
    """Encode a prepared upload as protocol messages, in send order.

    Payloads up to ``chunk_size`` base64 characters go out as one
    ``file_upload``; larger ones are split into equal slices.
    """
    encoded = upload.encoded
    if len(encoded) <= chunk_size:
        return [
            FileUpload(
                filename=upload.filename,
                path=upload.remote_path,
                content=encoded,
                mime=upload.mime,
            )
        ]

    upload_id = upload_id or f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    slice_size = math.ceil(len(encoded) / math.ceil(len(encoded) / chunk_size))
    total = math.ceil(len(encoded) / slice_size)
    return [
        FileUploadChunk(
            upload_id=upload_id,
            filename=upload.filename,
            path=upload.remote_path,
            index=i,
            total=total,
            chunk=encoded[i * slice_size : (i + 1) * slice_size],
            mime=upload.mime,
        )
        for i in range(total)
    ]


__all__ = [
    "PreparedUpload",
    "PastePlan",
    "detect_file_paths",
    "unique_filename",
    "mime_type",
    "is_eligible",
    "prepare_upload",
    "plan_paste",
    "build_upload_messages",
    "MAX_FILE_SIZE",
    "CHUNK_SIZE",
    "CHUNK_DELAY",
    "SUPPORTED_EXTENSIONS",
]
