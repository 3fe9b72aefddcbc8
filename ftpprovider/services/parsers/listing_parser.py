"""Directory listing parser for MLSD/MLST, Unix ``ls -l`` and DOS grammars."""
from __future__ import annotations

import logging
import posixpath
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ftpprovider.models import FileEntry, FileKind

logger = logging.getLogger(__name__)

MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}

DOS_LINE_RE = re.compile(
    r"^(\d{1,2})-(\d{1,2})-(\d{2}|\d{4})\s+(\d{1,2}):(\d{2})\s*([AaPp][Mm])?\s+(<DIR>|[\d,]+)\s+(.+)$"
)
MLST_TIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})(?:\.(\d{1,6}))?$")

MLST_KINDS = {
    "file": FileKind.REGULAR,
    "dir": FileKind.DIRECTORY,
    "link": FileKind.SYMLINK,
    "os.unix=block": FileKind.SPECIAL,
}


class ListingParser:
    """Turns listing lines into ``FileEntry`` objects.

    Paths are provider paths: relative to ``base_path``, one leading slash,
    no trailing separator. ``now`` is injectable so yearless Unix dates are
    deterministic in tests.
    """

    def __init__(self, base_path: str = "/", now: Optional[Callable[[], datetime]] = None) -> None:
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else "/"
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def parse_listing(self, text: str, directory: str, *, machine: bool) -> List[FileEntry]:
        entries: List[FileEntry] = []
        for raw in text.splitlines():
            line = raw.rstrip("\r")
            if not line.strip():
                continue
            entry = self.parse_mlst(line, directory) if machine else self.parse_line(line, directory)
            if entry is None:
                logger.debug("Skipping listing line: %r", line)
                continue
            entries.append(entry)
        return entries

    def parse_line(self, line: str, directory: str) -> Optional[FileEntry]:
        """Parse one LIST line, detecting the DOS or Unix grammar."""

        if DOS_LINE_RE.match(line.strip()):
            return self.parse_dos(line, directory)
        return self.parse_unix(line, directory)

    # ------------------------------------------------------------------
    # Grammars
    # ------------------------------------------------------------------
    def parse_mlst(self, line: str, directory: str, *, listing: bool = True) -> Optional[FileEntry]:
        """Parse one fact line.

        In a listing ``cdir``/``pdir`` entries are dropped; for a single-item
        MLST reply they describe the item itself.
        """

        components = [item for item in line.split(";") if item]
        if len(components) < 2:
            return None
        name_or_path = components.pop().strip()
        if not name_or_path:
            return None
        if name_or_path.startswith("/"):
            path = self._strip_base(name_or_path)
            name = posixpath.basename(name_or_path.rstrip("/")) or "/"
        else:
            name = name_or_path
            path = self.join(directory, name)
        if listing and name in (".", ".."):
            return None

        facts: Dict[str, str] = {}
        for component in components:
            key, sep, value = component.strip().partition("=")
            if not sep or not key:
                continue
            facts[key.lower()] = value

        entry = FileEntry(name=name, path=path)
        for key, value in facts.items():
            if key == "type":
                kind = value.lower()
                if kind in ("cdir", "pdir"):
                    if listing:
                        return None
                    entry.kind = FileKind.DIRECTORY
                else:
                    entry.kind = MLST_KINDS.get(kind, FileKind.UNKNOWN)
            elif key == "unique":
                entry.attributes["unique_id"] = value
            elif key == "modify":
                entry.modified_at = parse_mlst_time(value)
            elif key == "create":
                entry.created_at = parse_mlst_time(value)
            elif key == "perm":
                perm = value.lower()
                writable = "w" in perm or "a" in perm
                entry.attributes["readable"] = "r" in perm or "l" in perm
                entry.attributes["writable"] = writable
                entry.is_read_only = not writable
            elif key == "size":
                try:
                    entry.size = int(value)
                except ValueError:
                    entry.size = -1
            elif key == "media-type":
                entry.attributes["media_type"] = value
        if entry.is_directory:
            entry.size = -1
        return entry

    def parse_unix(self, line: str, directory: str) -> Optional[FileEntry]:
        tokens = line.split()
        if len(tokens) < 9:
            return None
        permissions = tokens[0]
        try:
            link_count = int(tokens[1])
        except ValueError:
            link_count = 0
        try:
            size = int(tokens[4])
        except ValueError:
            size = -1

        date_tokens = tokens[5:8]
        name_start = 8
        if len(tokens) >= 10 and ":" in tokens[7] and re.fullmatch(r"\d{4}", tokens[8]):
            # "Mon dd hh:mm yyyy"
            date_tokens = tokens[5:9]
            name_start = 9
        name = " ".join(tokens[name_start:])

        kind_char = permissions[0]
        attributes = {}
        if kind_char == "d":
            kind = FileKind.DIRECTORY
        elif kind_char == "l":
            kind = FileKind.SYMLINK
            name, sep, target = name.partition(" -> ")
            if sep:
                attributes["symlink_target"] = target
        else:
            kind = FileKind.REGULAR

        if not name or name in (".", ".."):
            return None

        return FileEntry(
            name=name,
            path=self.join(directory, name),
            kind=kind,
            size=-1 if kind is FileKind.DIRECTORY else size,
            modified_at=self._parse_unix_date(date_tokens),
            is_read_only="w" not in permissions,
            link_count=link_count,
            attributes=attributes,
        )

    def parse_dos(self, line: str, directory: str) -> Optional[FileEntry]:
        match = DOS_LINE_RE.match(line.strip())
        if not match:
            return None
        month, day, year, hour, minute, meridiem, size_or_dir, name = match.groups()
        name = name.strip()
        if name in (".", ".."):
            return None
        is_dir = size_or_dir.upper() == "<DIR>"

        year_value = int(year)
        if len(year) == 2:
            year_value += 2000 if year_value < 70 else 1900
        hour_value = int(hour)
        if meridiem:
            hour_value %= 12
            if meridiem.upper() == "PM":
                hour_value += 12
        try:
            modified = datetime(year_value, int(month), int(day), hour_value, int(minute), tzinfo=timezone.utc)
        except ValueError:
            modified = None

        return FileEntry(
            name=name,
            path=self.join(directory, name),
            kind=FileKind.DIRECTORY if is_dir else FileKind.REGULAR,
            size=-1 if is_dir else int(size_or_dir.replace(",", "")),
            modified_at=modified,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def join(directory: str, name: str) -> str:
        joined = posixpath.join("/" + (directory or "").strip("/"), name)
        return "/" + joined.strip("/")

    def _strip_base(self, server_path: str) -> str:
        path = server_path
        base = self.base_path.rstrip("/")
        if base and (path == base or path.startswith(base + "/")):
            path = path[len(base):]
        return "/" + path.strip("/")

    def _parse_unix_date(self, tokens: List[str]) -> Optional[datetime]:
        if len(tokens) < 3:
            return None
        month = MONTHS.get(tokens[0][:3].lower())
        if month is None or not tokens[1].isdigit():
            return None
        day = int(tokens[1])
        try:
            if len(tokens) == 4:
                hour, minute = (int(part) for part in tokens[2].split(":", 1))
                return datetime(int(tokens[3]), month, day, hour, minute, tzinfo=timezone.utc)
            if ":" in tokens[2]:
                hour, minute = (int(part) for part in tokens[2].split(":", 1))
                return self._most_recent(month, day, hour, minute)
            return datetime(int(tokens[2]), month, day, tzinfo=timezone.utc)
        except ValueError:
            return None

    def _most_recent(self, month: int, day: int, hour: int, minute: int) -> Optional[datetime]:
        """Latest past occurrence of a yearless date; Feb 29 lands on a leap year."""
        now = self._now()
        for year in range(now.year, now.year - 8, -1):
            try:
                parsed = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
            except ValueError:
                continue
            if parsed <= now:
                return parsed
        return None


def parse_mlst_time(value: str) -> Optional[datetime]:
    """Parse ``YYYYMMDDHHMMSS[.fff]`` as UTC."""

    match = MLST_TIME_RE.match(value.strip())
    if not match:
        return None
    year, month, day, hour, minute, second, fraction = match.groups()
    micro = int((fraction or "0").ljust(6, "0"))
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=timezone.utc
        )
    except ValueError:
        return None
