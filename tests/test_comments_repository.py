import pytest
from bson import ObjectId

from comments import MAX_LIMIT, CommentRepository
from errors import NotFound, ValidationError
from utils import now


@pytest.fixture
def repo(db):
    return CommentRepository(db)


@pytest.fixture
def author(db):
    return db["user"].insert_one({"email": "carol@example.com", "passwordHash": "x"}).inserted_id


@pytest.fixture
def file_id():
    return ObjectId()


def _ids(groups):
    return [[str(c["_id"]) for c in group] for group in groups]


def test_create_stores_coordinates_and_server_timestamp(repo, author, file_id):
    c = repo.create(file_id, author, "Move the logo", 12.5, 99.9)
    stored = repo.find_by_id(c["_id"])
    assert stored["x"] == 12.5
    assert stored["y"] == 99.9
    assert stored["parentId"] is None
    assert stored["createdAt"] is not None


@pytest.mark.parametrize("x,y", [(-0.1, 5), (5, 100.01), (101, 101)])
def test_create_rejects_out_of_range_coordinates(repo, author, file_id, x, y):
    with pytest.raises(ValidationError):
        repo.create(file_id, author, "off canvas", x, y)


def test_create_accepts_bounds(repo, author, file_id):
    repo.create(file_id, author, "corner", 0, 100)


def test_create_rejects_blank_body(repo, author, file_id):
    with pytest.raises(ValidationError):
        repo.create(file_id, author, "   ", 1, 1)


def test_reply_requires_existing_parent(repo, author, file_id):
    with pytest.raises(NotFound):
        repo.create(file_id, author, "reply", 1, 1, parent_id=ObjectId())


def test_reply_requires_parent_on_same_file(repo, author, file_id):
    root = repo.create(ObjectId(), author, "elsewhere", 1, 1)
    with pytest.raises(NotFound):
        repo.create(file_id, author, "reply", 1, 1, parent_id=root["_id"])


def test_reply_to_reply_is_kept_under_root(repo, author, file_id):
    root = repo.create(file_id, author, "root", 1, 1)
    reply = repo.create(file_id, author, "first", 1, 1, parent_id=root["_id"])
    nested = repo.create(file_id, author, "second", 1, 1, parent_id=reply["_id"])
    assert nested["parentId"] == root["_id"]
    groups = repo.list_threaded(file_id)["comments"]
    assert _ids(groups) == [[str(root["_id"]), str(reply["_id"]), str(nested["_id"])]]


def test_find_by_id_missing(repo):
    with pytest.raises(NotFound):
        repo.find_by_id(ObjectId())


def test_list_threaded_groups_and_orders(repo, author, file_id):
    r1 = repo.create(file_id, author, "one", 1, 1)
    r2 = repo.create(file_id, author, "two", 2, 2)
    a = repo.create(file_id, author, "re one", 1, 1, parent_id=r1["_id"])
    b = repo.create(file_id, author, "re two", 1, 1, parent_id=r2["_id"])
    c = repo.create(file_id, author, "re one again", 1, 1, parent_id=r1["_id"])
    repo.create(ObjectId(), author, "other file", 1, 1)

    result = repo.list_threaded(file_id, 1, 20)
    assert _ids(result["comments"]) == [
        [str(r1["_id"]), str(a["_id"]), str(c["_id"])],
        [str(r2["_id"]), str(b["_id"])],
    ]
    assert result["pagination"] == {"total": 2, "page": 1, "limit": 20, "totalPages": 1}
    assert result["comments"][0][0]["author"]["email"] == "carol@example.com"
    assert "passwordHash" not in result["comments"][0][0]["author"]


def test_list_threaded_is_idempotent(repo, author, file_id):
    root = repo.create(file_id, author, "root", 1, 1)
    repo.create(file_id, author, "reply", 1, 1, parent_id=root["_id"])
    assert repo.list_threaded(file_id) == repo.list_threaded(file_id)


@pytest.mark.parametrize("limit", [1, 2, 3, 7, 100])
def test_pages_cover_every_group_once(repo, author, file_id, limit):
    for i in range(9):
        root = repo.create(file_id, author, f"root {i}", i, i)
        for j in range(i % 3):
            repo.create(file_id, author, f"reply {i}.{j}", 1, 1, parent_id=root["_id"])

    everything = _ids(repo.list_threaded(file_id, 1, MAX_LIMIT)["comments"])
    first = repo.list_threaded(file_id, 1, limit)
    pages = [first] + [repo.list_threaded(file_id, p, limit) for p in range(2, first["pagination"]["totalPages"] + 1)]
    collected = [g for page in pages for g in _ids(page["comments"])]
    assert collected == everything
    assert len(everything) == 9


def test_limit_is_clamped(repo, author, file_id):
    repo.create(file_id, author, "root", 1, 1)
    assert repo.list_threaded(file_id, 1, 500)["pagination"]["limit"] == MAX_LIMIT
    assert repo.list_threaded(file_id, 0, 0)["pagination"]["page"] == 1


def test_orphan_replies_are_dropped(repo, db, author, file_id):
    repo.create(file_id, author, "root", 1, 1)
    db["comment"].insert_one({"fileId": file_id, "authorId": author, "body": "orphan", "x": 1, "y": 1, "parentId": ObjectId(), "createdAt": now()})
    repo.create(file_id, author, "second root", 1, 1)
    groups = repo.list_threaded(file_id)["comments"]
    assert [len(g) for g in groups] == [1, 1]


def test_list_replies_paginates(repo, author, file_id):
    root = repo.create(file_id, author, "root", 1, 1)
    replies = [repo.create(file_id, author, f"r{i}", 1, 1, parent_id=root["_id"]) for i in range(5)]
    page2 = repo.list_replies(root["_id"], 2, 2)
    assert [c["_id"] for c in page2["comments"]] == [replies[2]["_id"], replies[3]["_id"]]
    assert page2["pagination"] == {"total": 5, "page": 2, "limit": 2, "totalPages": 3}


def test_attach_mention_results_is_idempotent(repo, author, file_id):
    c = repo.create(file_id, author, "hi @dan", 1, 1)
    results = [{"user": author, "sent": False, "reason": "self-mention", "email": "carol@example.com"}]
    repo.attach_mention_results(c["_id"], results)
    repo.attach_mention_results(c["_id"], results)
    assert repo.find_by_id(c["_id"])["mentionNotifications"] == results
