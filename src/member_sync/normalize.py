"""Parsing functions for member directory records.

parse_display_name is strict: it raises FormatError on malformed input
and applies no whitespace normalization.
"""

from __future__ import annotations

from member_sync.shared import FormatError, Identity, Member, RawSourceRecord


# ---------------------------------------------------------------------------
# Rule 1: parse_display_name
# ---------------------------------------------------------------------------

def parse_display_name(raw: str | None) -> Identity:
    """Split a raw display name into (short_id, display_name).

    The raw value is split on single spaces and must yield exactly two
    non-empty tokens, returned verbatim:

      "u123 Alice"   → Identity("u123", "Alice")
      "Alice"        → FormatError (one token)
      "u123  Alice"  → FormatError (empty token between the spaces)
      "u1 Alice Doe" → FormatError (three tokens)
    """
    if not isinstance(raw, str):
        raise FormatError(f"display name must be a string, got {type(raw).__name__}")
    tokens = raw.split(" ")
    if len(tokens) != 2:
        raise FormatError(
            f"display name must have exactly 2 space-separated tokens, "
            f"got {len(tokens)}: {raw!r}"
        )
    short_id, display_name = tokens
    if not short_id or not display_name:
        raise FormatError(f"display name has an empty token: {raw!r}")
    return Identity(short_id=short_id, display_name=display_name)


# ---------------------------------------------------------------------------
# Rule 2: parse_member
# ---------------------------------------------------------------------------

def parse_member(record: RawSourceRecord) -> Member:
    """Build a Member from a fetched record's profile.display_name."""
    return Member(
        member_id=record.member_id,
        identity=parse_display_name(record.display_name),
    )
