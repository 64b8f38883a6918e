from __future__ import annotations

import html
import logging
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional

import requests  # type: ignore[import]

from .interfaces import LabelApplier, WorkSource
from .models import WorkItem

logger = logging.getLogger("inbox_sweep.graph")

# Graph rejects $orderby unless the ordered property also leads the $filter.
_EPOCH_FILTER = "receivedDateTime ge 1900-01-01T00:00:00Z"


def _html_to_text(raw_html: str) -> str:
    """Lightweight HTML -> plaintext converter (strip tags, unescape entities)."""
    if not raw_html:
        return ""

    class _Stripper(HTMLParser):
        def __init__(self):
            super().__init__()
            self.parts: List[str] = []

        def handle_data(self, data: str) -> None:
            self.parts.append(data)

        def get_text(self) -> str:
            return "".join(self.parts)

    stripper = _Stripper()
    stripper.feed(raw_html)
    stripper.close()
    return html.unescape(stripper.get_text())


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


def _plan_category_updates(
    desired: Dict[str, str], existing: List[Dict[str, Any]]
) -> Dict[str, Dict[str, Any]]:
    """Return the operations needed to align master categories with desired colours.

    Keyed by category name; each value holds `action` (create/update/unchanged),
    the desired `color`, and the master category `id` when Graph already has one.
    """

    existing_by_name = {
        c.get("displayName"): c for c in existing if c.get("displayName")
    }
    plan: Dict[str, Dict[str, Any]] = {}

    for name, color in desired.items():
        current = existing_by_name.get(name)
        if current is None:
            plan[name] = {"action": "create", "color": color}
            continue

        if current.get("color") != color:
            plan[name] = {"action": "update", "color": color, "id": current.get("id")}
            continue

        plan[name] = {"action": "unchanged", "color": color, "id": current.get("id")}

    return plan


class GraphClient(WorkSource, LabelApplier):
    """Microsoft Graph mailbox scoped to a single user.

    Acts as the work source (unmarked Inbox messages, oldest first) and as the
    label applier (Outlook categories, draft replies).
    """

    def __init__(
        self,
        access_token: str,
        user: str,
        base_url: str = "https://graph.microsoft.com/v1.0",
        *,
        processed_label: str = "ai✓",
        error_label: str = "aiX",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.user = user  # "me" for delegated, or userPrincipalName for app-only
        self.base_url = base_url.rstrip("/")
        self.processed_label = processed_label
        self.error_label = error_label
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        )

    @property
    def _user_root(self) -> str:
        if self.user.lower() == "me":
            return f"{self.base_url}/me"
        return f"{self.base_url}/users/{self.user}"

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = self.session.get(url, params=params, timeout=60)
        if not resp.ok:
            logger.error("Graph GET %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json()

    def _patch(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.patch(url, json=body, timeout=60)
        if not resp.ok:
            logger.error("Graph PATCH %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json() if resp.text else {}

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(url, json=body, timeout=60)
        if not resp.ok:
            logger.error("Graph POST %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json() if resp.text else {}

    # -----------------------------
    # Work source
    # -----------------------------

    def _candidate_filter(self) -> str:
        clauses = [_EPOCH_FILTER]
        for label in (self.processed_label, self.error_label):
            clauses.append(f"not(categories/any(c:c eq '{_odata_quote(label)}'))")
        return " and ".join(clauses)

    def list_candidate_messages(
        self, folder: str = "Inbox", limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Raw Graph messages without a terminal marker, oldest first."""
        url: Optional[str] = f"{self._user_root}/mailFolders/{folder}/messages"
        params: Optional[Dict[str, Any]] = {
            "$select": "id,subject,body,bodyPreview,conversationId,categories,receivedDateTime",
            "$orderby": "receivedDateTime asc",
            "$filter": self._candidate_filter(),
            "$top": 50 if not limit else min(limit, 50),
        }
        messages: List[Dict[str, Any]] = []
        while url and (not limit or len(messages) < limit):
            data = self._get(url, params=params)
            params = None
            messages.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
        return messages[:limit] if limit else messages

    def list_candidates(self, query: str, limit: Optional[int] = None) -> List[WorkItem]:
        folder = "Inbox" if (query or "inbox").lower() == "inbox" else query
        items = []
        for m in self.list_candidate_messages(folder, limit):
            body = m.get("body") or {}
            content = body.get("content") or m.get("bodyPreview") or ""
            if (body.get("contentType") or "").lower() == "html":
                content = _html_to_text(content)
            items.append(
                WorkItem(
                    id=m["id"],
                    subject=m.get("subject") or "",
                    body=content.strip(),
                    thread_id=m.get("conversationId"),
                )
            )
        logger.info("Found %d unmarked message(s) in %s", len(items), folder)
        return items

    # -----------------------------
    # Label applier
    # -----------------------------

    def get_categories(self, message_id: str) -> List[str]:
        data = self._get(
            f"{self._user_root}/messages/{message_id}", params={"$select": "categories"}
        )
        return list(data.get("categories") or [])

    def update_message(self, message_id: str, patch_body: Dict[str, Any]) -> None:
        self._patch(f"{self._user_root}/messages/{message_id}", patch_body)

    def apply_outcome_label(self, item_id: str, label: str) -> None:
        categories = self.get_categories(item_id)
        if label not in categories:
            categories.append(label)
            self.update_message(item_id, {"categories": categories})

    def apply_terminal_marker(self, item_id: str, ok: bool) -> None:
        keep, drop = (
            (self.processed_label, self.error_label)
            if ok
            else (self.error_label, self.processed_label)
        )
        categories = [c for c in self.get_categories(item_id) if c != drop]
        if keep not in categories:
            categories.append(keep)
        self.update_message(item_id, {"categories": categories})

    def create_draft_reply(self, message_id: str, reply_body_html: str) -> Optional[str]:
        """Create a draft reply for a message and return the draft id (None on failure)."""
        data = self._post(f"{self._user_root}/messages/{message_id}/createReply", {})
        draft = data.get("message") or data
        draft_id = draft.get("id")
        if not draft_id:
            logger.error("createReply did not return a draft id for %s", message_id)
            return None
        self._patch(
            f"{self._user_root}/messages/{draft_id}",
            {"body": {"contentType": "HTML", "content": reply_body_html}},
        )
        return draft_id

    def reply_now(self, message_id: str, text: str) -> None:
        self._post(f"{self._user_root}/messages/{message_id}/reply", {"comment": text})

    def create_draft_or_reply(self, item_id: str, text: str, send: bool = False) -> Optional[str]:
        if send:
            self.reply_now(item_id, text)
            return None
        body_html = "<p>" + "<br>".join(html.escape(line) for line in text.splitlines()) + "</p>"
        return self.create_draft_reply(item_id, body_html)

    # -----------------------------
    # Master categories
    # -----------------------------

    def list_master_categories(self) -> List[Dict[str, Any]]:
        url: Optional[str] = f"{self._user_root}/outlook/masterCategories"
        params: Optional[Dict[str, Any]] = {"$select": "id,displayName,color"}
        out: List[Dict[str, Any]] = []
        while url:
            data = self._get(url, params=params)
            params = None
            out.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
        return out

    def ensure_master_categories(self, desired_colors: Dict[str, str]) -> Dict[str, str]:
        """Create or recolour master categories. Returns name -> action taken."""
        plan = _plan_category_updates(desired_colors, self.list_master_categories())
        results: Dict[str, str] = {}
        for name, step in plan.items():
            action = step.get("action")
            color = step.get("color")
            if action == "create":
                self._post(
                    f"{self._user_root}/outlook/masterCategories",
                    {"displayName": name, "color": color},
                )
            elif action == "update":
                cat_id = step.get("id")
                if cat_id:
                    self._patch(
                        f"{self._user_root}/outlook/masterCategories/{cat_id}",
                        {"color": color},
                    )
                else:
                    logger.warning("Category %s missing id during update; recreating", name)
                    self._post(
                        f"{self._user_root}/outlook/masterCategories",
                        {"displayName": name, "color": color},
                    )
                    action = "create"
            results[name] = action or "unchanged"
        return results
