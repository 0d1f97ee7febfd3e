"""
Client-side comment cache.

Keeps the thread groups a client has fetched page by page and folds live
`new-comment` events into the same structure. Comments are deduplicated by
id, so a comment seen both over the socket and in a later page fetch shows
up once.
"""
from typing import Any, Dict, List, Optional

import requests

MAX_PENDING_REPLIES = 200


def _order(comment: Dict[str, Any]):
    return (comment.get("createdAt") or "", comment.get("id") or "")


class CommentCache:
    def __init__(self):
        self.groups: Dict[str, List[Dict[str, Any]]] = {}
        self.root_order: List[str] = []
        self.seen: set = set()
        self.pending_replies: Dict[str, List[Dict[str, Any]]] = {}
        self.pagination: Optional[Dict[str, int]] = None

    def _add_root(self, root: Dict[str, Any]):
        root_id = root["id"]
        self.groups[root_id] = [root]
        self.root_order.append(root_id)
        self.root_order.sort(key=lambda rid: _order(self.groups[rid][0]))
        self.seen.add(root_id)
        for reply in self.pending_replies.pop(root_id, []):
            self._add_reply(reply)

    def _add_reply(self, reply: Dict[str, Any]):
        group = self.groups[reply["parentId"]]
        group.append(reply)
        group[1:] = sorted(group[1:], key=_order)
        self.seen.add(reply["id"])

    def _trim_pending(self):
        while sum(len(v) for v in self.pending_replies.values()) > MAX_PENDING_REPLIES:
            del self.pending_replies[next(iter(self.pending_replies))]

    def merge_incoming(self, comment: Dict[str, Any]) -> bool:
        """Merge one comment; returns False when it was already known."""
        comment_id = comment["id"]
        if comment_id in self.seen:
            return False
        parent_id = comment.get("parentId")
        if not parent_id:
            self._add_root(comment)
        elif parent_id in self.groups:
            self._add_reply(comment)
        else:
            waiting = self.pending_replies.setdefault(parent_id, [])
            if all(c["id"] != comment_id for c in waiting):
                waiting.append(comment)
                self._trim_pending()
            else:
                return False
        return True

    def ingest_page(self, payload: Dict[str, Any]) -> int:
        added = 0
        for group in payload.get("comments", []):
            for comment in group:
                if self.merge_incoming(comment):
                    added += 1
        self.pagination = payload.get("pagination", self.pagination)
        p = self.pagination
        if p and p.get("page", 0) >= p.get("totalPages", 0):
            # every root is loaded; replies still waiting have no root to attach to
            self.pending_replies.clear()
        return added

    def threads(self) -> List[List[Dict[str, Any]]]:
        return [list(self.groups[rid]) for rid in self.root_order]

    def find_thread(self, comment_id: str) -> Optional[List[Dict[str, Any]]]:
        if comment_id in self.groups:
            return list(self.groups[comment_id])
        for rid in self.root_order:
            if any(c["id"] == comment_id for c in self.groups[rid]):
                return list(self.groups[rid])
        return None


class CommentFeed:
    """Fetches threaded comment pages for one file into a CommentCache.

    `http` is anything with a requests-style `get(url, params=...)`.
    """

    def __init__(self, file_id: str, http=None, base_url: str = "", limit: int = 20, cache: Optional[CommentCache] = None):
        self.file_id = file_id
        self.http = http or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.limit = limit
        self.cache = cache or CommentCache()
        self.last_page = 0

    def load_page(self, page: int) -> Dict[str, Any]:
        res = self.http.get(f"{self.base_url}/comments", params={"fileId": self.file_id, "page": page, "limit": self.limit})
        res.raise_for_status()
        payload = res.json()
        self.cache.ingest_page(payload)
        self.last_page = max(self.last_page, page)
        return payload

    def has_more(self) -> bool:
        p = self.cache.pagination
        return p is None or self.last_page < p["totalPages"]

    def load_next(self) -> Optional[Dict[str, Any]]:
        if not self.has_more():
            return None
        return self.load_page(self.last_page + 1)

    def locate_thread(self, comment_id: str) -> Optional[List[Dict[str, Any]]]:
        """Fetch further pages until the thread holding comment_id is loaded."""
        thread = self.cache.find_thread(comment_id)
        while thread is None and self.has_more():
            self.load_next()
            thread = self.cache.find_thread(comment_id)
        return thread

    def on_socket_event(self, message: Dict[str, Any]) -> bool:
        if message.get("event") != "new-comment":
            return False
        comment = message.get("data") or {}
        if comment.get("fileId") != self.file_id:
            return False
        return self.cache.merge_incoming(comment)
