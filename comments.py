"""
Comment storage and thread-shaped queries.

A thread group is a root comment followed by its direct replies. Replies never
nest: a reply to a reply is stored under the same root. Listing paginates over
groups, ordered by the root's createdAt; replies inside a group are ordered by
createdAt as well. Ties on createdAt fall back to the id, which grows with
insertion order.
"""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from errors import NotFound, ValidationError
from schemas import COORDINATE_MAX, COORDINATE_MIN
from utils import now, oid, public_user

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_ORDER = [("createdAt", 1), ("_id", 1)]


def clamp_paging(page: Optional[int], limit: Optional[int]):
    page_num = page if page and page > 0 else 1
    limit_num = limit if limit and limit > 0 else DEFAULT_LIMIT
    return page_num, min(limit_num, MAX_LIMIT)


def pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def _sort_key(comment: Dict[str, Any]):
    return (comment["createdAt"], comment["_id"])


class CommentRepository:
    def __init__(self, db):
        self.db = db
        self.comments = db["comment"]

    def ensure_indexes(self):
        self.comments.create_index([("fileId", 1), ("parentId", 1), ("createdAt", 1)])

    def create(self, file_id, author_id, body: str, x: float, y: float, parent_id=None, annotation: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("Comment body must not be empty")
        for name, value in (("x", x), ("y", y)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
                raise ValidationError(f"{name} must be a number")
            if not COORDINATE_MIN <= value <= COORDINATE_MAX:
                raise ValidationError(f"{name} must be between {COORDINATE_MIN} and {COORDINATE_MAX}")

        file_id = oid(file_id)
        doc = {
            "fileId": file_id,
            "authorId": oid(author_id),
            "body": body,
            "x": float(x),
            "y": float(y),
            "parentId": None,
            "createdAt": now(),
        }
        if annotation:
            doc["annotation"] = annotation

        if parent_id is not None:
            parent = self.comments.find_one({"_id": oid(parent_id)})
            if not parent or parent["fileId"] != file_id:
                raise NotFound("Parent comment not found")
            doc["parentId"] = parent.get("parentId") or parent["_id"]

        res = self.comments.insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.debug("Comment %s created on file %s", res.inserted_id, file_id)
        return doc

    def find_by_id(self, comment_id) -> Dict[str, Any]:
        comment = self.comments.find_one({"_id": oid(comment_id)})
        if not comment:
            raise NotFound("Comment not found")
        return comment

    def attach_mention_results(self, comment_id, results: List[Dict[str, Any]]):
        self.comments.update_one({"_id": oid(comment_id)}, {"$set": {"mentionNotifications": results}})

    def with_authors(self, comments: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        comments = list(comments)
        author_ids = list({c["authorId"] for c in comments})
        users = {u["_id"]: public_user(u) for u in self.db["user"].find({"_id": {"$in": author_ids}})}
        return [{**c, "author": users.get(c["authorId"])} for c in comments]

    def list_threaded(self, file_id, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        page, limit = clamp_paging(page, limit)
        file_id = oid(file_id)
        roots_filter = {"fileId": file_id, "parentId": None}
        total = self.comments.count_documents(roots_filter)

        pipeline = [
            {"$match": roots_filter},
            {"$sort": {"createdAt": 1, "_id": 1}},
            {"$skip": (page - 1) * limit},
            {"$limit": limit},
            {
                "$lookup": {
                    "from": "comment",
                    "localField": "_id",
                    "foreignField": "parentId",
                    "as": "replies",
                }
            },
        ]
        roots = list(self.comments.aggregate(pipeline))

        flat: List[Dict[str, Any]] = []
        shapes = []
        for root in roots:
            replies = sorted(root.pop("replies", []), key=_sort_key)
            shapes.append(1 + len(replies))
            flat.append(root)
            flat.extend(replies)

        enriched = self.with_authors(flat)
        groups, cursor = [], 0
        for size in shapes:
            groups.append(enriched[cursor:cursor + size])
            cursor += size

        return {"comments": groups, "pagination": pagination(total, page, limit)}

    def list_replies(self, parent_id, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        page, limit = clamp_paging(page, limit)
        parent = self.find_by_id(parent_id)
        query = {"parentId": parent["_id"]}
        total = self.comments.count_documents(query)
        cursor = self.comments.find(query).sort(_ORDER).skip((page - 1) * limit).limit(limit)
        return {
            "comments": self.with_authors(cursor),
            "pagination": pagination(total, page, limit),
        }
