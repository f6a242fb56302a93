"""
Staged audio files.

Layout:
    <upload_root>/<fromUser>/<toUser>/<ts>_<id>[_suffix].<ext>
    download path: <download_prefix>/<fromUser>/<toUser>/<ts>_<id>[_suffix].<ext>

Envelopes without users (HTTP-triggered translation) use the `translate` segment
in place of `<fromUser>/<toUser>`.

A StagingSession tracks every path it hands out and removes all of them when the
`with` block exits. Only files marked with `keep()` survive, and only when the
block exits cleanly.
"""

from __future__ import annotations

import re
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Set

from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.+@-]")
SHARED_SEGMENT = "translate"


def safe_segment(value: str) -> str:
    """Turn an opaque user id into a single safe path component."""
    cleaned = _UNSAFE_CHARS.sub("_", (value or "").strip()).lstrip(".")
    return cleaned or "_"


def conversation_segments(from_user: str, to_user: str) -> List[str]:
    if not (from_user or "").strip() or not (to_user or "").strip():
        return [SHARED_SEGMENT]
    return [safe_segment(from_user), safe_segment(to_user)]


class StagingSession:
    def __init__(self, *, directory: Path, rel_segments: List[str], download_prefix: str, stem: str) -> None:
        self.directory = directory
        self.rel_segments = rel_segments
        self.download_prefix = download_prefix
        self.stem = stem
        self._tracked: List[Path] = []
        self._kept: Set[Path] = set()

    def path(self, ext: str, suffix: str = "") -> Path:
        """Reserve a staged file path (the file itself is created by the caller)."""
        name = f"{self.stem}_{suffix}.{ext}" if suffix else f"{self.stem}.{ext}"
        path = self.directory / name
        self._tracked.append(path)
        return path

    def keep(self, path: Path) -> str:
        """Mark a staged file as the run's result and return its download path."""
        self._kept.add(path)
        return self.download_url(path)

    def download_url(self, path: Path) -> str:
        return "/".join([self.download_prefix, *self.rel_segments, path.name])

    def cleanup(self, *, keep_results: bool) -> int:
        removed = 0
        for path in self._tracked:
            if keep_results and path in self._kept:
                continue
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove staged file | path=%s", path, exc_info=exc)
        return removed


class StagingArea:
    def __init__(self, upload_root: str, download_prefix: str = "download", keep_on_failure: bool = False) -> None:
        self.upload_root = Path(upload_root)
        self.download_prefix = download_prefix.strip("/")
        self.keep_on_failure = keep_on_failure

    def resolve_download(self, rel_path: str) -> Optional[Path]:
        """Map a path under the download prefix back to the upload root; None if it escapes."""
        candidate = (self.upload_root / rel_path).resolve()
        root = self.upload_root.resolve()
        if candidate == root or root not in candidate.parents:
            return None
        return candidate

    @contextmanager
    def session(self, from_user: str = "", to_user: str = "", timestamp: Optional[int] = None) -> Iterator[StagingSession]:
        segments = conversation_segments(from_user, to_user)
        directory = self.upload_root.joinpath(*segments)
        directory.mkdir(parents=True, exist_ok=True)

        ts = timestamp if timestamp else int(time.time())
        stem = f"{ts}_{uuid.uuid4().hex[:12]}"
        staging = StagingSession(
            directory=directory,
            rel_segments=segments,
            download_prefix=self.download_prefix,
            stem=stem,
        )
        try:
            yield staging
        except BaseException:
            if self.keep_on_failure:
                logger.warning("Keeping staged files after failure | dir=%s | stem=%s", directory, stem)
            else:
                staging.cleanup(keep_results=False)
            raise
        else:
            staging.cleanup(keep_results=True)
