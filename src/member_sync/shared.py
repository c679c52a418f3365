"""member_sync.shared

Shared types and utilities used by the source client, the tabular store
and the reconciliation pipeline. Includes the error taxonomy, the Member
data model, RejectWriter, SyncRunCounters and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MemberSyncError(Exception):
    """Base class for every error raised by member_sync."""


class ConfigError(MemberSyncError):
    """Raised when a required configuration value is missing or empty."""


class InvalidScopeError(MemberSyncError):
    """Raised when a scoped listing is requested with an empty scope id."""


class InvalidIdentifierError(MemberSyncError):
    """Raised when a detail lookup is requested with an empty member id."""


class RemoteError(MemberSyncError):
    """Raised when the upstream API reports failure or cannot be reached."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(f"remote error {code}: {message}" if message else f"remote error {code}")
        self.code = code
        self.message = message


class FormatError(MemberSyncError):
    """Raised when a source record or display name is malformed."""


class ShapeError(MemberSyncError):
    """Raised when rows handed to the tabular store are not rectangular."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

MEMBER_HEADER = ["memberId", "shortId", "displayName"]


@dataclass(frozen=True)
class Identity:
    short_id: str
    display_name: str


@dataclass(frozen=True)
class Member:
    member_id: str
    identity: Identity

    @classmethod
    def from_row(cls, row: list[Any]) -> Member:
        """Map a stored row positionally; missing cells read as ''."""
        cells = [("" if c is None else str(c)) for c in row[:3]]
        cells += [""] * (3 - len(cells))
        return cls(
            member_id=cells[0],
            identity=Identity(short_id=cells[1], display_name=cells[2]),
        )

    def to_row(self) -> list[str]:
        return [self.member_id, self.identity.short_id, self.identity.display_name]

    def is_complete(self) -> bool:
        return bool(
            self.member_id
            and self.identity is not None
            and self.identity.short_id
            and self.identity.display_name
        )


@dataclass(frozen=True)
class RawSourceRecord:
    """A user object returned by the member source's detail call.

    Only member_id and profile.display_name are relied upon; the rest of
    the profile is kept for the reject file and debugging.
    """

    member_id: str
    profile: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Any) -> RawSourceRecord:
        if not isinstance(payload, dict):
            raise FormatError("source record must be an object")
        member_id = payload.get("id")
        if not isinstance(member_id, str) or not member_id:
            raise FormatError("source record has no id")
        profile = payload.get("profile")
        if not isinstance(profile, dict):
            raise FormatError(f"source record {member_id} has no profile")
        if "display_name" not in profile:
            raise FormatError(f"source record {member_id} has no profile.display_name")
        return cls(member_id=member_id, profile=dict(profile))

    @property
    def display_name(self) -> Any:
        return self.profile.get("display_name")


@dataclass(frozen=True)
class MemberOutcome:
    """Result of processing one member id: a record/member, or an error.

    stage is "fetch" or "parse" for failures, None for successes.
    """

    member_id: str
    record: RawSourceRecord | None = None
    member: Member | None = None
    error: str | None = None
    stage: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected members."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# SyncRunCounters
# ---------------------------------------------------------------------------

@dataclass
class SyncRunCounters:
    # Fetch
    ids_listed: int = 0
    details_fetched: int = 0
    fetch_errors: int = 0
    # Parse
    members_parsed: int = 0
    parse_errors: int = 0
    # Merge / write
    existing_members_read: int = 0
    members_overwritten: int = 0
    members_added: int = 0
    members_merged: int = 0
    members_written: int = 0
    rows_skipped_incomplete: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def members_skipped(self) -> int:
        return self.fetch_errors + self.parse_errors

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["members_skipped"] = self.members_skipped
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_info: dict[str, str],
    counters: SyncRunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_info,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
