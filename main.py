import functools
import hashlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

import config
import database
from comments import CommentRepository
from errors import Forbidden, NotFound, Unauthorized, ValidationError, register_error_handlers
from mailer import EmailGateway
from mentions import MentionNotifier, project_member_ids
from realtime import RealtimeHub
from schemas import CommentCreate, DeadlineUpdate, LoginRequest, ProjectCreate, ReviewerInvite, SignupRequest
from sessions import SessionStore
from storage import BlobStorage
from utils import as_utc, now, oid, public_user, serialize

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png"}


# -----------------------------
# Helpers
# -----------------------------
def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def parse_deadline(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        deadline = as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError("Invalid date and time format")
    if deadline <= now():
        raise ValidationError("Deadline must be a valid future date and time")
    return deadline


def is_member(project: Dict[str, Any], user_id) -> bool:
    return user_id in project_member_ids(project)


def is_owner(file: Dict[str, Any], project: Dict[str, Any], user_id) -> bool:
    return file["authorId"] == user_id or project["authorId"] == user_id


def deadline_passed(file: Dict[str, Any]) -> bool:
    deadline = as_utc(file.get("deadline"))
    return deadline is not None and now() > deadline


# -----------------------------
# Dependencies
# -----------------------------
def get_db(request: Request):
    return request.app.state.db


def get_current_user(request: Request) -> Dict[str, Any]:
    session = request.app.state.sessions.get(request)
    user = request.app.state.db["user"].find_one({"_id": session["userId"]})
    if not user:
        raise Unauthorized("User not found")
    return user


def load_file(db, file_id) -> Dict[str, Any]:
    file = db["file"].find_one({"_id": oid(file_id)})
    if not file:
        raise NotFound("File not found")
    return file


def load_project(db, project_id) -> Dict[str, Any]:
    project = db["project"].find_one({"_id": oid(project_id)})
    if not project:
        raise NotFound("Project not found")
    return project


def load_file_for_member(db, file_id, user) -> tuple:
    file = load_file(db, file_id)
    project = load_project(db, file["projectId"])
    if not is_member(project, user["_id"]):
        raise Forbidden("You don't have access to this file")
    return file, project


def can_access_file(db, user_id, file_id) -> bool:
    try:
        load_file_for_member(db, file_id, {"_id": oid(user_id)})
    except (NotFound, Forbidden, ValidationError):
        return False
    return True


def create_app(db=None, *, debug: Optional[bool] = None, mailer: Optional[EmailGateway] = None, storage: Optional[BlobStorage] = None, sessions: Optional[SessionStore] = None) -> FastAPI:
    db = db if db is not None else database.db
    if debug is None:
        debug = not config.is_production()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.hub.shutdown()
        database.close()

    app = FastAPI(title="File Review API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app, debug)

    app.state.db = db
    app.state.sessions = sessions or SessionStore(db)
    app.state.comments = CommentRepository(db) if db is not None else None
    app.state.mentions = MentionNotifier(db, app.state.comments, mailer or EmailGateway())
    app.state.hub = RealtimeHub(app.state.sessions, can_join=functools.partial(can_access_file, db))
    app.state.storage = storage or BlobStorage()

    if db is not None:
        app.state.sessions.ensure_indexes()
        app.state.comments.ensure_indexes()
    else:
        logger.warning("DATABASE_URL not set; API calls will fail until a database is configured")

    register_routes(app)
    return app


def register_routes(app: FastAPI):
    # -----------------------------
    # Auth endpoints
    # -----------------------------
    @app.post("/auth/signup", status_code=201)
    def signup(body: SignupRequest, response: Response, db=Depends(get_db)):
        existing = db["user"].find_one({"email": body.email})
        if existing and existing.get("passwordHash"):
            raise ValidationError("Email already registered")
        if existing:
            # Placeholder created by a reviewer invite: bind to the same id
            db["user"].update_one({"_id": existing["_id"]}, {"$set": {"passwordHash": hash_password(body.password)}})
            user_id = existing["_id"]
        else:
            user_id = oid(database.create_document("user", {"email": body.email, "passwordHash": hash_password(body.password)}, database=db))
        app.state.sessions.create(response, user_id)
        return serialize(db["user"].find_one({"_id": user_id}))

    @app.post("/auth/login")
    def login(body: LoginRequest, response: Response, db=Depends(get_db)):
        user = db["user"].find_one({"email": body.email})
        if not user or not user.get("passwordHash") or user["passwordHash"] != hash_password(body.password):
            raise Unauthorized("Invalid credentials")
        app.state.sessions.create(response, user["_id"])
        return serialize(user)

    @app.post("/auth/logout", status_code=204)
    def logout(request: Request, response: Response):
        app.state.sessions.remove(request, response)
        response.status_code = 204
        return response

    @app.get("/auth/me")
    def me(user=Depends(get_current_user)):
        return serialize(user)

    @app.get("/auth/socket-token")
    def socket_token(user=Depends(get_current_user)):
        return {"token": app.state.sessions.create_socket_token(user["_id"]), "userId": str(user["_id"])}

    # -----------------------------
    # Users
    # -----------------------------
    @app.get("/users/suggestions")
    def user_suggestions(projectId: str, query: str = "", user=Depends(get_current_user), db=Depends(get_db)):
        project = load_project(db, projectId)
        if not is_member(project, user["_id"]):
            raise Forbidden("You don't have access to this project")
        ids = [uid for uid in project_member_ids(project) if uid != user["_id"]]
        members = database.get_documents("user", {"_id": {"$in": ids}}, database=db)
        needle = query.lower()
        return [serialize(public_user(u)) for u in members if needle in u.get("email", "").lower()]

    # -----------------------------
    # Project endpoints
    # -----------------------------
    @app.post("/projects", status_code=201)
    def create_project(body: ProjectCreate, user=Depends(get_current_user), db=Depends(get_db)):
        doc = {
            "name": body.name,
            "authorId": user["_id"],
            "reviewers": [],
            "folderId": oid(body.folderId) if body.folderId else None,
            "createdAt": now(),
        }
        res = db["project"].insert_one(doc)
        return serialize(db["project"].find_one({"_id": res.inserted_id}))

    @app.get("/projects")
    def list_projects(user=Depends(get_current_user), db=Depends(get_db)):
        cursor = db["project"].find({"$or": [{"authorId": user["_id"]}, {"reviewers": user["_id"]}]}).sort("createdAt", 1)
        return [serialize(p) for p in cursor]

    @app.post("/projects/{project_id}/reviewers", status_code=201)
    def add_reviewer(project_id: str, body: ReviewerInvite, user=Depends(get_current_user), db=Depends(get_db)):
        project = load_project(db, project_id)
        if project["authorId"] != user["_id"]:
            raise Forbidden("Forbidden: You don't have permission to modify this project")
        reviewer = db["user"].find_one({"email": body.email})
        if reviewer:
            reviewer_id = reviewer["_id"]
        else:
            reviewer_id = oid(database.create_document("user", {"email": body.email}, database=db))
            logger.info("Created placeholder user for invited reviewer %s", body.email)
        db["project"].update_one({"_id": project["_id"]}, {"$addToSet": {"reviewers": reviewer_id}})
        return serialize(db["project"].find_one({"_id": project["_id"]}))

    # -----------------------------
    # File endpoints
    # -----------------------------
    def store_upload(upload: UploadFile) -> str:
        if upload.content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError("Invalid file type")
        return app.state.storage.save(upload)

    @app.post("/files", status_code=201)
    def upload_file(projectId: str = Form(...), deadline: Optional[str] = Form(None), file: UploadFile = File(...), user=Depends(get_current_user), db=Depends(get_db)):
        project = load_project(db, projectId)
        if project["authorId"] != user["_id"]:
            raise Forbidden("Only the project owner can upload files")
        due = parse_deadline(deadline)
        doc = {
            "projectId": project["_id"],
            "authorId": user["_id"],
            "name": file.filename,
            "path": store_upload(file),
            "createdAt": now(),
            "deadline": due,
            "version": 1,
            "originalFileId": None,
        }
        res = db["file"].insert_one(doc)
        return serialize(db["file"].find_one({"_id": res.inserted_id}))

    @app.post("/files/{file_id}/versions", status_code=201)
    def upload_version(file_id: str, deadline: Optional[str] = Form(None), file: UploadFile = File(...), user=Depends(get_current_user), db=Depends(get_db)):
        current = load_file(db, file_id)
        project = load_project(db, current["projectId"])
        if project["authorId"] != user["_id"] and current["authorId"] != user["_id"]:
            raise Forbidden("Only the file owner can upload new versions")
        due = parse_deadline(deadline)
        root_id = current.get("originalFileId") or current["_id"]
        latest = db["file"].find_one({"$or": [{"_id": root_id}, {"originalFileId": root_id}]}, sort=[("version", -1)])
        doc = {
            "projectId": current["projectId"],
            "authorId": user["_id"],
            "name": file.filename,
            "path": store_upload(file),
            "createdAt": now(),
            "deadline": due,
            "version": (latest or current).get("version", 1) + 1,
            "originalFileId": root_id,
        }
        res = db["file"].insert_one(doc)
        return serialize(db["file"].find_one({"_id": res.inserted_id}))

    @app.get("/files")
    def list_files(projectId: str, user=Depends(get_current_user), db=Depends(get_db)):
        project = load_project(db, projectId)
        if not is_member(project, user["_id"]):
            raise Forbidden("You don't have access to this project")
        cursor = db["file"].find({"projectId": project["_id"]}).sort("createdAt", 1)
        return [serialize(f) for f in cursor]

    @app.get("/files/{file_id}")
    def get_file(file_id: str, user=Depends(get_current_user), db=Depends(get_db)):
        file, _ = load_file_for_member(db, file_id, user)
        return serialize(file)

    @app.get("/files/{file_id}/content")
    def get_file_content(file_id: str, user=Depends(get_current_user), db=Depends(get_db)):
        file, _ = load_file_for_member(db, file_id, user)
        if not app.state.storage.exists(file["path"]):
            raise NotFound("File content not found")
        return FileResponse(os.path.abspath(file["path"]), filename=file["name"])

    @app.patch("/files/{file_id}/deadline")
    def update_deadline(file_id: str, body: DeadlineUpdate, user=Depends(get_current_user), db=Depends(get_db)):
        file = load_file(db, file_id)
        if file["authorId"] != user["_id"]:
            raise Forbidden("Only the file owner can update the deadline")
        deadline = as_utc(body.deadline) if body.deadline else None
        db["file"].update_one({"_id": file["_id"]}, {"$set": {"deadline": deadline}})
        return serialize(db["file"].find_one({"_id": file["_id"]}))

    # -----------------------------
    # Comment endpoints
    # -----------------------------
    @app.get("/comments")
    def list_comments(fileId: str, page: int = Query(1), limit: int = Query(20), user=Depends(get_current_user), db=Depends(get_db)):
        file, _ = load_file_for_member(db, fileId, user)
        result = app.state.comments.list_threaded(file["_id"], page, limit)
        return {
            "comments": [[serialize(c) for c in group] for group in result["comments"]],
            "pagination": result["pagination"],
        }

    @app.get("/comments/{parent_id}/replies")
    def list_replies(parent_id: str, page: int = Query(1), limit: int = Query(20), user=Depends(get_current_user), db=Depends(get_db)):
        parent = db["comment"].find_one({"_id": oid(parent_id)})
        if not parent:
            raise NotFound("Parent comment not found")
        load_file_for_member(db, parent["fileId"], user)
        result = app.state.comments.list_replies(parent["_id"], page, limit)
        return {
            "comments": [serialize(c) for c in result["comments"]],
            "pagination": result["pagination"],
        }

    @app.post("/comments", status_code=201)
    async def create_comment(body: CommentCreate, background_tasks: BackgroundTasks, user=Depends(get_current_user), db=Depends(get_db)):
        def persist():
            file, project = load_file_for_member(db, body.fileId, user)
            if not is_owner(file, project, user["_id"]) and deadline_passed(file):
                raise Forbidden("Review deadline has passed. Comments can no longer be added.")
            comment = app.state.comments.create(
                file["_id"], user["_id"], body.body, body.x, body.y,
                parent_id=body.parentId, annotation=body.annotation,
            )
            return file, comment

        file, comment = await run_in_threadpool(persist)
        payload = serialize({**comment, "author": public_user(user)})

        background_tasks.add_task(app.state.mentions.handle_comment_mentions, comment)
        try:
            await app.state.hub.broadcast_new_comment(str(file["_id"]), payload, user["_id"])
        except Exception:
            logger.exception("Broadcast failed for comment %s", comment["_id"])
        return payload

    # -----------------------------
    # Realtime
    # -----------------------------
    @app.websocket("/ws")
    async def comments_ws(websocket: WebSocket):
        await app.state.hub.serve(websocket)

    # -----------------------------
    # Health
    # -----------------------------
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/")
    def read_root():
        return {"message": "File Review API running"}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
