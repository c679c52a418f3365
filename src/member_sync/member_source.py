"""member_sync.member_source

Client for the remote member directory (Slack Web API conventions).

Design principles:
  - Sequential: exactly one in-flight request, no batching beyond the
    server-side pagination each method offers.
  - No retry: a transport failure, a non-200 status or an `ok: false`
    payload surfaces immediately as RemoteError.
  - Scoped listing follows response_metadata.next_cursor until exhausted.
  - The unscoped bulk listing is a single request; populations larger than
    bulk_limit are truncated (a warning is logged when the server signals
    more pages).
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from member_sync.shared import (
    ConfigError,
    InvalidIdentifierError,
    InvalidScopeError,
    RawSourceRecord,
    RemoteError,
)

log = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api/"
DEFAULT_PAGE_LIMIT = 200
DEFAULT_BULK_LIMIT = 1000


def _next_cursor(data: dict[str, Any]) -> str | None:
    meta = data.get("response_metadata") or {}
    cursor = meta.get("next_cursor") if isinstance(meta, dict) else None
    return cursor or None


class SlackMemberSource:
    """List member ids and fetch member detail from the Slack Web API."""

    def __init__(
        self,
        token: str,
        session: requests.Session | None = None,
        base_url: str = SLACK_API_BASE,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        bulk_limit: int = DEFAULT_BULK_LIMIT,
        timeout: int = 30,
    ) -> None:
        if not isinstance(token, str) or not token:
            raise ConfigError("token must be a non-empty string")
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.page_limit = page_limit
        self.bulk_limit = bulk_limit
        self.timeout = timeout
        self.calls_made = 0

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """GET one API method and return its payload, or raise RemoteError."""
        url = self._base_url + method
        self.calls_made += 1
        try:
            resp = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RemoteError("transport_error", f"{method}: {exc}") from exc

        if resp.status_code != 200:
            raise RemoteError(f"http_{resp.status_code}", method)

        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteError("invalid_json", method) from exc
        if not isinstance(data, dict):
            raise RemoteError("invalid_json", f"{method}: payload is not an object")

        if not data.get("ok"):
            raise RemoteError(str(data.get("error") or "unknown_error"), method)
        return data

    # ------------------------------------------------------------------ #
    # Listing                                                              #
    # ------------------------------------------------------------------ #

    def list_member_ids_in_scope(self, scope_id: str) -> list[str]:
        """Return every member id in a channel, following cursors to the end."""
        if not isinstance(scope_id, str) or not scope_id:
            raise InvalidScopeError("scope_id must be a non-empty string")

        member_ids: list[str] = []
        cursor: str | None = None
        pages = 0
        while True:
            params: dict[str, Any] = {"channel": scope_id, "limit": self.page_limit}
            if cursor:
                params["cursor"] = cursor
            data = self._call("conversations.members", params)
            pages += 1
            member_ids.extend(data.get("members") or [])
            cursor = _next_cursor(data)
            if cursor is None:
                break

        log.info(
            "Listed %d member ids in scope %s across %d page(s)",
            len(member_ids), scope_id, pages,
        )
        return member_ids

    def list_all_member_ids(self) -> list[str]:
        """Return member ids from a single bulk users.list request.

        There is no cursor loop here: workspaces with more than bulk_limit
        members are truncated. Use list_member_ids_in_scope for complete
        listings.
        """
        data = self._call("users.list", {"limit": self.bulk_limit})
        members = data.get("members") or []
        if _next_cursor(data) is not None:
            log.warning(
                "users.list returned a next cursor; listing truncated at %d members",
                len(members),
            )
        return [m["id"] for m in members if isinstance(m, dict) and m.get("id")]

    # ------------------------------------------------------------------ #
    # Detail                                                               #
    # ------------------------------------------------------------------ #

    def fetch_detail(self, member_id: str) -> RawSourceRecord:
        """Fetch one member's user object and validate its profile shape."""
        if not isinstance(member_id, str) or not member_id:
            raise InvalidIdentifierError("member_id must be a non-empty string")
        data = self._call("users.info", {"user": member_id})
        return RawSourceRecord.from_payload(data.get("user"))
