"""Domain models shared with the rest of the file-provider family."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class FileKind(str, Enum):
    """Normalized entry kinds across listing grammars."""

    REGULAR = "regular"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    SPECIAL = "special"
    UNKNOWN = "unknown"


class FileEntry(BaseModel):
    """One remote file system entry."""

    name: str
    path: str = Field(..., description="Path relative to the session base path, single leading slash")
    kind: FileKind = FileKind.UNKNOWN
    size: int = Field(-1, description="Size in bytes, -1 when unknown or a directory")
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    is_read_only: bool = False
    link_count: Optional[int] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_directory(self) -> bool:
        return self.kind is FileKind.DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.kind is FileKind.SYMLINK

    @property
    def is_regular(self) -> bool:
        return self.kind is FileKind.REGULAR


class TransferProgress(BaseModel):
    """Progress of a transfer after one chunk."""

    chunk_bytes: int = 0
    completed_bytes: int = 0
    total_bytes: int = -1

    @property
    def fraction(self) -> Optional[float]:
        if self.total_bytes <= 0:
            return None
        return min(1.0, self.completed_bytes / self.total_bytes)
