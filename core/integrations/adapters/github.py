"""GitHub adapter: repository webhooks, issue sync and issue/comment actions."""
from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlparse

from core.integrations.adapter_base import AdapterBase
from core.integrations.errors import ConnectionFailed, RefreshUnsupported, UnsupportedAction
from core.integrations.records import NormalizedEvent, SyncPage

API_ROOT = "https://api.github.com"
PAGE_SIZE = 50
_NEXT_LINK = re.compile(r'<([^>]+)>;\s*rel="next"')


def next_page_from_link(link_header: str | None) -> str | None:
    """Extract the ``page`` query value of the rel="next" link."""
    if not link_header:
        return None
    match = _NEXT_LINK.search(link_header)
    if not match:
        return None
    pages = parse_qs(urlparse(match.group(1)).query).get("page")
    return pages[0] if pages else None


class GitHubAdapter(AdapterBase):
    connector_id = "github"

    def auth_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        headers = super().auth_headers(credentials)
        headers["Accept"] = "application/vnd.github+json"
        return headers

    async def test_connection(self, credentials: dict[str, Any]) -> bool:
        resp = await self.authorized_request("GET", f"{API_ROOT}/user", credentials)
        user = self.json_body(resp, "user lookup")
        if not isinstance(user, dict) or not user.get("login"):
            raise ConnectionFailed("github user lookup: malformed response")
        return True

    async def refresh_tokens(self, credentials: dict[str, Any]) -> dict[str, Any]:
        raise RefreshUnsupported("GitHub OAuth app tokens do not expire and cannot be refreshed")

    def normalize_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        received_at: datetime,
    ) -> NormalizedEvent:
        action = payload.get("action") or ""
        subject = payload.get("issue") or payload.get("pull_request") or payload.get("repository") or {}
        comment = payload.get("comment") or {}
        type_name = f"github.{event_type}.{action}" if action else f"github.{event_type}"
        return NormalizedEvent(
            type=type_name,
            data={
                "id": subject.get("id", payload.get("id")),
                "number": subject.get("number"),
                "title": subject.get("title"),
                "body": comment.get("body") or subject.get("body"),
                "state": subject.get("state"),
                "url": subject.get("html_url"),
                "repository": (payload.get("repository") or {}).get("full_name"),
                "sender": (payload.get("sender") or {}).get("login"),
            },
            timestamp=subject.get("updated_at") or payload.get("updated_at") or received_at.isoformat(),
        )

    def extract_event_id(self, payload: dict[str, Any], headers: Mapping[str, str], raw_body: bytes) -> str:
        delivery = headers.get("x-github-delivery")
        if delivery:
            return delivery
        return super().extract_event_id(payload, headers, raw_body)

    def extract_event_type(self, payload: dict[str, Any], headers: Mapping[str, str]) -> str:
        return headers.get("x-github-event") or super().extract_event_type(payload, headers)

    async def sync_inbound(self, credentials: dict[str, Any], cursor: str | None) -> SyncPage:
        params: dict[str, Any] = {"filter": "all", "state": "all", "per_page": PAGE_SIZE}
        if cursor:
            params["page"] = cursor
        resp = await self.authorized_request("GET", f"{API_ROOT}/issues", credentials, params=params)
        issues = self.json_body(resp, "issue listing")
        if not isinstance(issues, list):
            raise ConnectionFailed("github issue listing: malformed response")
        items = [
            {
                "id": issue.get("id"),
                "number": issue.get("number"),
                "title": issue.get("title"),
                "body": issue.get("body"),
                "state": issue.get("state"),
                "url": issue.get("html_url"),
                "repository": (issue.get("repository") or {}).get("full_name"),
                "created_at": issue.get("created_at"),
                "updated_at": issue.get("updated_at"),
            }
            for issue in issues
        ]
        return SyncPage(items=items, next_cursor=next_page_from_link(resp.headers.get("Link")))

    async def perform_outbound_action(
        self,
        action: str,
        credentials: dict[str, Any],
        data: dict[str, Any],
    ) -> Any:
        owner, _, repo = str(data.get("repository", "")).partition("/")
        if not owner or not repo:
            raise UnsupportedAction("repository must be given as owner/name")

        if action == "create_issue":
            self.require_fields(action, data, "title")
            body = {"title": data["title"], "body": data.get("body"), "labels": data.get("labels")}
            resp = await self.authorized_request(
                "POST",
                f"{API_ROOT}/repos/{owner}/{repo}/issues",
                credentials,
                json={k: v for k, v in body.items() if v is not None},
            )
            return self.json_body(resp, "create_issue")

        if action == "create_comment":
            self.require_fields(action, data, "issue_number", "body")
            resp = await self.authorized_request(
                "POST",
                f"{API_ROOT}/repos/{owner}/{repo}/issues/{data['issue_number']}/comments",
                credentials,
                json={"body": data["body"]},
            )
            return self.json_body(resp, "create_comment")

        raise UnsupportedAction(f"Unsupported action for github: {action}")
