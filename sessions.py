"""
Cookie sessions backed by the "session" collection.

The cookie carries a signed token wrapping the session id. The same
`resolve` routine serves HTTP requests and websocket handshakes; HTTP
callers get Unauthorized on failure, socket callers get None.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Request, Response, WebSocket
from jose import JWTError, jwt

import config
from errors import Unauthorized
from utils import as_utc, now

logger = logging.getLogger(__name__)

JWT_ALG = "HS256"
SOCKET_TOKEN_TTL = timedelta(hours=1)


class SessionStore:
    def __init__(self, db, secret: str = config.COOKIE_SECRET, cookie_name: str = config.SESSION_COOKIE_NAME, days: int = config.SESSION_DAYS, domain: Optional[str] = config.COOKIE_DOMAIN):
        self.db = db
        self.secret = secret
        self.cookie_name = cookie_name
        self.duration = timedelta(days=days)
        self.domain = domain

    def ensure_indexes(self):
        self.db["session"].create_index("expiresAt", expireAfterSeconds=0)

    # -----------------------------
    # Signing
    # -----------------------------
    def sign(self, session_id: str) -> str:
        return jwt.encode({"sid": session_id}, self.secret, algorithm=JWT_ALG)

    def unsign(self, value: str) -> Optional[str]:
        try:
            payload = jwt.decode(value, self.secret, algorithms=[JWT_ALG])
        except JWTError:
            return None
        sid = payload.get("sid")
        if not sid or not ObjectId.is_valid(sid):
            return None
        return sid

    def create_socket_token(self, user_id: str) -> str:
        payload = {"sub": str(user_id), "exp": int((now() + SOCKET_TOKEN_TTL).timestamp())}
        return jwt.encode(payload, self.secret, algorithm=JWT_ALG)

    def verify_socket_token(self, token: str) -> Optional[str]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[JWT_ALG])
        except JWTError:
            return None
        user_id = payload.get("sub")
        if not user_id or not ObjectId.is_valid(user_id):
            return None
        return user_id

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def create(self, response: Response, user_id: ObjectId) -> Dict[str, Any]:
        session = {"userId": user_id, "createdAt": now(), "expiresAt": now() + self.duration}
        res = self.db["session"].insert_one(session)
        session["_id"] = res.inserted_id
        response.set_cookie(
            key=self.cookie_name,
            value=self.sign(str(res.inserted_id)),
            expires=session["expiresAt"],
            domain=self.domain,
            httponly=True,
            samesite="strict",
            path="/",
        )
        return session

    def resolve(self, cookie_value: Optional[str]) -> Optional[Dict[str, Any]]:
        if not cookie_value:
            return None
        sid = self.unsign(cookie_value)
        if sid is None:
            return None
        session = self.db["session"].find_one({"_id": ObjectId(sid)})
        if not session:
            return None
        # The TTL monitor runs periodically, so an expired row may still exist
        if as_utc(session["expiresAt"]) <= now():
            return None
        return session

    def get(self, request: Request) -> Dict[str, Any]:
        value = request.cookies.get(self.cookie_name)
        if not value:
            raise Unauthorized("No session found")
        session = self.resolve(value)
        if session is None:
            raise Unauthorized("Session invalid or expired")
        return session

    def get_from_socket(self, websocket: WebSocket) -> Optional[Dict[str, Any]]:
        try:
            return self.resolve(websocket.cookies.get(self.cookie_name))
        except Exception:
            logger.exception("Session lookup failed during socket handshake")
            return None

    def remove(self, request: Request, response: Response):
        session = self.get(request)
        self.db["session"].delete_one({"_id": session["_id"]})
        response.delete_cookie(self.cookie_name, path="/", domain=self.domain, httponly=True)
