"""
Per-session scratch directories.

Each session owns ``<workspace_root>/<session_id>``. Every run starts from an
empty directory; a directory that cannot be deleted right away (a dying guest
still holds files in it) is moved into ``<workspace_root>/.trash`` and
deleted later.
"""

from __future__ import annotations

import logging
import re
import shutil
import uuid

from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from cloudide.core.constants import SESSION_ID_PATTERN, WORKSPACE_TRASH_DIR

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)


class WorkspaceError(Exception):
    """Raised when a scratch directory cannot be prepared or a file cannot be placed in it."""


class WorkspaceManager:
    """Creates, resets and removes per-session scratch directories.

    All methods are blocking; async callers run them via ``asyncio.to_thread``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        self.trash = self.root / WORKSPACE_TRASH_DIR

    def path_for(self, session_id: str) -> Path:
        """Deterministic scratch directory for a session.

        Raises:
            WorkspaceError: If the session id cannot be used as a directory name.
        """
        if not _SESSION_ID_RE.match(session_id) or session_id == WORKSPACE_TRASH_DIR:
            raise WorkspaceError(f"Invalid session id for workspace: {session_id!r}")
        return self.root / session_id

    def reset(self, session_id: str) -> Path:
        """Replace the session's directory with a fresh empty one."""
        path = self.path_for(session_id)
        self.purge_trash()
        if path.exists() and not self._discard(path):
            raise WorkspaceError(f"Could not clear workspace {path}")
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write(self, session_id: str, files: Mapping[str, str]) -> list[Path]:
        """Persist a file set verbatim under the session's directory.

        Returns:
            Paths written, in input order.

        Raises:
            WorkspaceError: If a filename escapes the directory or cannot be written.
        """
        base = self.path_for(session_id)
        written: list[Path] = []
        for name, content in files.items():
            target = base / self._relative_path(name)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
            except OSError as e:
                raise WorkspaceError(f"Could not write {name!r}: {e.strerror or e}") from e
            written.append(target)
        return written

    def remove(self, session_id: str) -> bool:
        """Delete the session's directory. Returns False if something was left behind."""
        path = self.path_for(session_id)
        removed = not path.exists() or self._discard(path)
        self.purge_trash()
        return removed

    def purge_trash(self) -> None:
        """Retry deletion of directories moved aside earlier."""
        if not self.trash.is_dir():
            return
        for entry in self.trash.iterdir():
            try:
                shutil.rmtree(entry)
            except OSError as e:
                logger.debug(f"Trash entry {entry.name} still busy: {e}")

    def _discard(self, path: Path) -> bool:
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            logger.warning(f"Failed to delete {path}, moving it aside: {e}")

        try:
            self.trash.mkdir(parents=True, exist_ok=True)
            path.rename(self.trash / f"{path.name}-{uuid.uuid4().hex[:8]}")
            return True
        except OSError as e:
            logger.error(f"Failed to move {path} aside: {e}")
            return False

    @staticmethod
    def _relative_path(name: str) -> PurePosixPath:
        if not name or "\x00" in name:
            raise WorkspaceError(f"Invalid filename: {name!r}")
        rel = PurePosixPath(name.replace("\\", "/"))
        if rel.is_absolute() or ".." in rel.parts or rel.parts[0:1] == ("~",):
            raise WorkspaceError(f"Filename escapes the workspace: {name!r}")
        if not rel.parts or rel.parts == (".",):
            raise WorkspaceError(f"Invalid filename: {name!r}")
        return rel
