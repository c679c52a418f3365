"""member_sync.pipeline

Fetch → parse → merge → write reconciliation of the member directory.

Run states:
  INIT      required configuration present, else ConfigError (fatal)
  FETCHING  list member ids (fatal on failure), then fetch detail per id
  PARSING   parse profile.display_name per fetched record
  MERGING   read stored members, overlay fetched members by member_id
  WRITING   replace the table with the merged set (skipped on dry run)
  DONE      merged member list returned to the caller
  FAILED    reached from INIT or from any propagated error

Per-member fetch and parse failures are turned into MemberOutcome values
at the per-member boundary: recorded in `failures`, written to the reject
file, counted, and skipped. They never fail the run.

A run only adds or overwrites; members already stored but absent from the
fetch are kept unchanged.
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol

from member_sync.config import SyncConfig, load_config
from member_sync.member_source import SlackMemberSource
from member_sync.normalize import parse_member
from member_sync.shared import (
    FormatError,
    Member,
    MemberOutcome,
    MemberSyncError,
    RawSourceRecord,
    RejectWriter,
    SyncRunCounters,
)
from member_sync.tabular_store import TabularStore, open_backend

log = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    FETCHING = "fetching"
    PARSING = "parsing"
    MERGING = "merging"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


class MemberSource(Protocol):
    def list_member_ids_in_scope(self, scope_id: str) -> list[str]:
        ...

    def list_all_member_ids(self) -> list[str]:
        ...

    def fetch_detail(self, member_id: str) -> RawSourceRecord:
        ...


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge_members(
    existing: Iterable[Member],
    fetched: Iterable[Member],
) -> list[Member]:
    """Union by member_id; fetched members overwrite existing ones.

    Order is first appearance: existing members first, then new ids in
    fetch order.
    """
    by_id: dict[str, Member] = {}
    for member in existing:
        by_id[member.member_id] = member
    for member in fetched:
        by_id[member.member_id] = member
    return list(by_id.values())


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ReconciliationPipeline:
    def __init__(
        self,
        config: SyncConfig,
        source: MemberSource,
        store: TabularStore,
        counters: SyncRunCounters | None = None,
        rejects: RejectWriter | None = None,
        run_id: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.config = config
        self.source = source
        self.store = store
        self.counters = counters or SyncRunCounters()
        self.rejects = rejects
        self.run_id = run_id or str(uuid.uuid4())
        self.dry_run = dry_run
        self.state = RunState.INIT
        self.failures: dict[str, str] = {}

    # ------------------------------------------------------------------ #
    # Per-member boundary                                                  #
    # ------------------------------------------------------------------ #

    def _fetch_one(self, member_id: str) -> MemberOutcome:
        try:
            record = self.source.fetch_detail(member_id)
        except MemberSyncError as exc:
            return MemberOutcome(member_id, error=str(exc), stage="fetch")
        return MemberOutcome(member_id, record=record)

    def _parse_one(self, outcome: MemberOutcome) -> MemberOutcome:
        try:
            member = parse_member(outcome.record)
        except FormatError as exc:
            return MemberOutcome(
                outcome.member_id, record=outcome.record, error=str(exc), stage="parse",
            )
        return MemberOutcome(outcome.member_id, record=outcome.record, member=member)

    def _record_failure(self, outcome: MemberOutcome) -> None:
        self.failures[outcome.member_id] = outcome.error or ""
        if outcome.stage == "fetch":
            self.counters.fetch_errors += 1
        else:
            self.counters.parse_errors += 1
        self.counters.warnings.append(
            f"{outcome.stage} failed member_id={outcome.member_id}: {outcome.error}"
        )
        log.warning(
            "[%s] skipping member %s (%s): %s",
            self.run_id, outcome.member_id, outcome.stage, outcome.error,
        )
        if self.rejects is not None:
            raw_display = outcome.record.display_name if outcome.record else None
            self.rejects.write(
                {
                    "member_id": outcome.member_id,
                    "stage": outcome.stage or "",
                    "raw_display_name": "" if raw_display is None else str(raw_display),
                },
                outcome.error or "",
            )

    # ------------------------------------------------------------------ #
    # Phases                                                               #
    # ------------------------------------------------------------------ #

    def _list_member_ids(self) -> list[str]:
        if self.config.unscoped:
            return self.source.list_all_member_ids()
        return self.source.list_member_ids_in_scope(self.config.scope_id)

    def _fetch(self) -> list[MemberOutcome]:
        self.state = RunState.FETCHING
        member_ids = self._list_member_ids()
        self.counters.ids_listed = len(member_ids)
        log.info("[%s] %d member ids listed", self.run_id, len(member_ids))

        outcomes: list[MemberOutcome] = []
        for member_id in member_ids:
            outcome = self._fetch_one(member_id)
            if outcome.ok:
                self.counters.details_fetched += 1
                outcomes.append(outcome)
            else:
                self._record_failure(outcome)
        return outcomes

    def _parse(self, fetched: list[MemberOutcome]) -> list[Member]:
        self.state = RunState.PARSING
        members: list[Member] = []
        for outcome in fetched:
            parsed = self._parse_one(outcome)
            if parsed.ok:
                members.append(parsed.member)
            else:
                self._record_failure(parsed)
        self.counters.members_parsed = len(members)
        return members

    def _merge(self, fetched: list[Member]) -> list[Member]:
        self.state = RunState.MERGING
        existing = self.store.read_members(self.config.table_name)
        self.counters.existing_members_read = len(existing)
        existing_ids = {m.member_id for m in existing}
        fetched_ids = {m.member_id for m in fetched}
        self.counters.members_overwritten = len(fetched_ids & existing_ids)
        self.counters.members_added = len(fetched_ids - existing_ids)
        merged = merge_members(existing, fetched)
        self.counters.members_merged = len(merged)
        return merged

    def _write(self, merged: list[Member]) -> None:
        self.state = RunState.WRITING
        if self.dry_run:
            log.info(
                "[%s] dry run: not writing %d members to %s",
                self.run_id, len(merged), self.config.table_name,
            )
            return
        written = self.store.write_members(merged, self.config.table_name)
        self.counters.members_written = written
        self.counters.rows_skipped_incomplete = len(merged) - written

    def run(self) -> list[Member]:
        """Execute one reconciliation run and return the merged members."""
        try:
            self.config.require()
            fetched = self._fetch()
            parsed = self._parse(fetched)
            merged = self._merge(parsed)
            self._write(merged)
        except Exception:
            log.error("[%s] run failed in state %s", self.run_id, self.state.value)
            self.state = RunState.FAILED
            raise
        self.state = RunState.DONE
        if self.failures:
            log.warning(
                "[%s] run finished with %d member(s) skipped",
                self.run_id, len(self.failures),
            )
        return merged


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_sync_report(counters: SyncRunCounters, dry_run: bool) -> str:
    lines = [
        "=== Member Sync Run Report ===",
        f"dry_run          : {dry_run}",
        "",
        "--- Fetch ---",
        f"ids_listed       : {counters.ids_listed}",
        f"details_fetched  : {counters.details_fetched}",
        f"members_parsed   : {counters.members_parsed}",
        "",
        "--- Merge ---",
        f"existing_read    : {counters.existing_members_read}",
        f"overwritten      : {counters.members_overwritten}",
        f"added            : {counters.members_added}",
        f"merged_total     : {counters.members_merged}",
        f"written          : {counters.members_written}",
        f"skipped_rows     : {counters.rows_skipped_incomplete}",
        "",
        "--- Errors ---",
        f"fetch_errors     : {counters.fetch_errors}",
        f"parse_errors     : {counters.parse_errors}",
        f"members_skipped  : {counters.members_skipped}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_components(config: SyncConfig) -> tuple[SlackMemberSource, TabularStore]:
    """Construct the source client and store for a validated config."""
    config.require()
    source = SlackMemberSource(config.api_token)
    store = TabularStore(open_backend(config.store_location))
    return source, store


def close_store(store: TabularStore) -> None:
    close = getattr(store.backend, "close", None)
    if close is not None:
        close()


def run_member_sync(properties_path: Path | None = None) -> list[Member]:
    """Load configuration, run one reconciliation, return the merged members.

    Raises the terminating error on any fatal failure.
    """
    config = load_config(properties_path)
    source, store = build_components(config)
    try:
        pipeline = ReconciliationPipeline(config, source, store)
        members = pipeline.run()
        log.info("[%s]\n%s", pipeline.run_id, build_sync_report(pipeline.counters, dry_run=False))
        return members
    finally:
        close_store(store)
