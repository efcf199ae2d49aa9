"""
Session model: what the orchestrator knows about one client connection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

#: URL prefix under which a session's guest server is reachable.
PREVIEW_PREFIX = "/preview"


@dataclass(frozen=True)
class Session:
    """One client connection and the resources allocated to it.

    The live guest process is owned by the session's supervisor, not stored here.
    """

    session_id: str
    port: int
    workspace: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def preview_path(self) -> str:
        return f"{PREVIEW_PREFIX}/{self.session_id}/"
