import pytest
from bson import ObjectId

from comments import CommentRepository
from mentions import MentionNotifier, comment_url, extract_mentions, resolve_mentions
from tests.conftest import FakeMailer


def test_extract_mentions_dedups():
    assert extract_mentions("hi @bob and @bob again") == {"bob"}


def test_extract_mentions_none():
    assert extract_mentions("no mentions here") == set()
    assert extract_mentions("") == set()


def test_extract_mentions_allows_dots_and_hyphens():
    assert extract_mentions("ping @jane.doe, @ops-team and @x_1!") == {"jane.doe", "ops-team", "x_1"}


@pytest.fixture
def world(db):
    users = {
        name: db["user"].insert_one({"email": f"{name}@example.com"}).inserted_id
        for name in ("owner", "bob", "eve", "bobby")
    }
    project_id = db["project"].insert_one({
        "name": "Brochure",
        "authorId": users["owner"],
        "reviewers": [users["bob"], users["bobby"]],
    }).inserted_id
    file_id = db["file"].insert_one({"projectId": project_id, "authorId": users["owner"], "name": "cover.png"}).inserted_id
    return {
        "users": users,
        "project": db["project"].find_one({"_id": project_id}),
        "file": db["file"].find_one({"_id": file_id}),
    }


def test_resolve_by_local_part_and_full_email(db, world):
    found = resolve_mentions(db, {"bob", "owner@example.com"}, world["project"])
    assert sorted(u["email"] for u in found) == ["bob@example.com", "owner@example.com"]


def test_resolve_ignores_non_members(db, world):
    assert resolve_mentions(db, {"eve"}, world["project"]) == []


def test_resolve_local_part_is_exact(db, world):
    found = resolve_mentions(db, {"bo"}, world["project"])
    assert found == []


def _notifier(db, mailer):
    return MentionNotifier(db, CommentRepository(db), mailer, frontend_url="https://review.example.com")


def _comment(db, world, body, author="owner"):
    repo = CommentRepository(db)
    return repo.create(world["file"]["_id"], world["users"][author], body, 5, 5)


def test_handle_sends_and_records_results(db, world):
    mailer = FakeMailer()
    c = _comment(db, world, "@bob please check, cc @bobby")
    results = _notifier(db, mailer).handle_comment_mentions(c)

    assert sorted(r["email"] for r in results) == ["bob@example.com", "bobby@example.com"]
    assert all(r["sent"] for r in results)
    assert len(mailer.sent) == 2
    sent = mailer.sent[0]
    assert sent["subject"] == "You were mentioned in a comment on Brochure"
    assert f"https://review.example.com/files/{world['file']['_id']}?commentId={c['_id']}" in sent["html"]
    assert "cover.png" in sent["html"]

    stored = db["comment"].find_one({"_id": c["_id"]})
    assert len(stored["mentionNotifications"]) == 2


def test_self_mention_never_sends(db, world):
    mailer = FakeMailer()
    c = _comment(db, world, "note to @owner", author="owner")
    results = _notifier(db, mailer).handle_comment_mentions(c)
    assert results == [{"user": world["users"]["owner"], "email": "owner@example.com", "sent": False, "reason": "self-mention"}]
    assert mailer.sent == []


def test_self_mention_reason_without_smtp(db, world):
    c = _comment(db, world, "@owner @bob", author="owner")
    results = _notifier(db, FakeMailer(configured=False)).handle_comment_mentions(c)
    reasons = {r["email"]: r["reason"] for r in results}
    assert reasons == {"owner@example.com": "self-mention", "bob@example.com": "smtp-not-configured"}
    assert not any(r["sent"] for r in results)


def test_one_failure_does_not_abort_others(db, world):
    mailer = FakeMailer(failing={"bob@example.com"})
    c = _comment(db, world, "@bob @bobby")
    results = {r["email"]: r for r in _notifier(db, mailer).handle_comment_mentions(c)}
    assert results["bob@example.com"]["sent"] is False
    assert "unavailable" in results["bob@example.com"]["error"]
    assert results["bobby@example.com"]["sent"] is True


def test_handle_without_mentions_is_noop(db, world):
    c = _comment(db, world, "plain comment")
    assert _notifier(db, FakeMailer()).handle_comment_mentions(c) == []
    assert "mentionNotifications" not in db["comment"].find_one({"_id": c["_id"]})


def test_handle_swallows_lookup_problems(db, world):
    orphan = {"_id": ObjectId(), "fileId": ObjectId(), "authorId": ObjectId(), "body": "@bob"}
    assert _notifier(db, FakeMailer()).handle_comment_mentions(orphan) == []


def test_comment_url():
    assert comment_url("f1", "c1", "http://localhost:5173") == "http://localhost:5173/files/f1?commentId=c1"


def test_extract_mentions_drops_trailing_punctuation():
    assert extract_mentions("thanks @bob. See @jane.doe.") == {"bob", "jane.doe"}
    assert extract_mentions("ask @ops-team- or @-") == {"ops-team"}


def test_sentence_end_mention_resolves(db, world):
    users = resolve_mentions(db, extract_mentions("thanks @bob."), world["project"])
    assert [u["_id"] for u in users] == [world["users"]["bob"]]
