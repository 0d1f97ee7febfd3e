"""
@mention extraction, resolution against project members, and email fan-out.

Mention handling runs after the comment is stored. Nothing in here is allowed
to surface as an error to the request that created the comment: every
notification attempt ends up as a MentionResult on the comment.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Set

import config
from mailer import EmailGateway, mention_template

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"@([\w.-]+)")
MAX_SEND_WORKERS = 8


def extract_mentions(text: str) -> Set[str]:
    if not text:
        return set()
    # sentence punctuation after a handle is not part of it: "thanks @bob."
    tokens = (m.rstrip(".-") for m in MENTION_PATTERN.findall(text))
    return {t for t in tokens if t}


def project_member_ids(project: Dict[str, Any]) -> list:
    return [project["authorId"], *project.get("reviewers", [])]


def resolve_mentions(db, tokens: Iterable[str], project: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Users matching a token by full email or email local-part, limited to project members."""
    tokens = sorted(set(tokens))
    if not tokens:
        return []
    query = {
        "_id": {"$in": project_member_ids(project)},
        "$or": [
            {"email": {"$in": tokens}},
            *({"email": {"$regex": f"^{re.escape(t)}@"}} for t in tokens),
        ],
    }
    return list(db["user"].find(query))


def local_part(email: str) -> str:
    return email.split("@", 1)[0]


def comment_url(file_id, comment_id, origin: str = config.FRONTEND_URL) -> str:
    return f"{origin}/files/{file_id}?commentId={comment_id}"


class MentionNotifier:
    def __init__(self, db, comments, mailer: EmailGateway, frontend_url: str = config.FRONTEND_URL):
        self.db = db
        self.comments = comments
        self.mailer = mailer
        self.frontend_url = frontend_url

    def notify(self, comment, file, project, author, users) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = [None] * len(users)
        pending = []
        configured = self.mailer.is_configured()
        if users and not configured:
            logger.warning("SMTP configuration missing; mention emails will not be sent")

        for i, user in enumerate(users):
            base = {"user": user["_id"], "email": user.get("email")}
            if user["_id"] == author["_id"]:
                results[i] = {**base, "sent": False, "reason": "self-mention"}
            elif not configured:
                results[i] = {**base, "sent": False, "reason": "smtp-not-configured"}
            else:
                pending.append(i)

        if not pending:
            return results

        subject = f"You were mentioned in a comment on {project['name']}"
        body = mention_template(
            mentioner_name=local_part(author.get("email", "")),
            project_name=project["name"],
            file_name=file["name"],
            comment_text=comment["body"],
            comment_url=comment_url(file["_id"], comment["_id"], self.frontend_url),
        )

        def deliver(user):
            try:
                self.mailer.send(user["email"], subject, body)
                return {"user": user["_id"], "sent": True, "email": user["email"]}
            except Exception as e:
                logger.error("Failed to send mention email to %s: %s", user["email"], e)
                return {"user": user["_id"], "sent": False, "error": str(e), "email": user["email"]}

        with ThreadPoolExecutor(max_workers=min(MAX_SEND_WORKERS, len(pending))) as pool:
            for i, result in zip(pending, pool.map(deliver, [users[i] for i in pending])):
                results[i] = result
        return results

    def handle_comment_mentions(self, comment: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            tokens = extract_mentions(comment.get("body", ""))
            if not tokens:
                return []
            file = self.db["file"].find_one({"_id": comment["fileId"]})
            if not file:
                logger.warning("File %s not found for mentions in comment %s", comment["fileId"], comment["_id"])
                return []
            project = self.db["project"].find_one({"_id": file["projectId"]})
            if not project:
                logger.warning("Project %s not found for mentions in comment %s", file["projectId"], comment["_id"])
                return []
            author = self.db["user"].find_one({"_id": comment["authorId"]})
            if not author:
                logger.warning("Author %s not found for mentions in comment %s", comment["authorId"], comment["_id"])
                return []

            users = resolve_mentions(self.db, tokens, project)
            results = self.notify(comment, file, project, author, users)
            if results:
                self.comments.attach_mention_results(comment["_id"], results)
            return results
        except Exception:
            logger.exception("Error handling mentions for comment %s", comment.get("_id"))
            return []
