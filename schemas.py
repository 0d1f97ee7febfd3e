"""
Database Schemas for the file review service

Each Pydantic model below documents a MongoDB collection. The collection name
is lowercased from the class name, e.g. User -> "user". Ids are stored as
ObjectId and shown here as strings.

The *Create / *Request models are the validated request bodies of the API.
"""
from datetime import datetime
from typing import Annotated, List, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator

COORDINATE_MIN = 0
COORDINATE_MAX = 100


def _object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("must be a valid id")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_object_id)]


# Auth and Users
class User(BaseModel):
    email: EmailStr = Field(..., description="Unique email")
    passwordHash: Optional[str] = Field(None, description="Unset for placeholder users created by an invite")


class Session(BaseModel):
    userId: str = Field(..., description="Owner of the session")
    expiresAt: datetime = Field(..., description="Removed by a TTL index once passed")


# Projects and files
class Project(BaseModel):
    name: str
    authorId: str = Field(..., description="User id of the project owner")
    reviewers: List[str] = Field(default_factory=list, description="User ids allowed to read and comment")
    folderId: Optional[str] = None


class File(BaseModel):
    projectId: str
    authorId: str
    name: str
    path: str = Field(..., description="Reference returned by blob storage")
    deadline: Optional[datetime] = Field(None, description="Reviewers may not comment after this")
    version: int = 1
    originalFileId: Optional[str] = Field(None, description="Lineage root; None for version 1")


# Comments
class MentionResult(BaseModel):
    user: str
    sent: bool
    email: str
    reason: Optional[str] = None
    error: Optional[str] = None


class Comment(BaseModel):
    fileId: str
    authorId: str
    body: str
    x: float = Field(..., ge=COORDINATE_MIN, le=COORDINATE_MAX)
    y: float = Field(..., ge=COORDINATE_MIN, le=COORDINATE_MAX)
    parentId: Optional[str] = Field(None, description="Thread root for replies")
    annotation: Optional[str] = Field(None, description="Base64 encoded image")
    mentionNotifications: Optional[List[MentionResult]] = None


# -----------------------------
# Request models
# -----------------------------
class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    folderId: Optional[ObjectIdStr] = None


class ReviewerInvite(BaseModel):
    email: EmailStr


class DeadlineUpdate(BaseModel):
    deadline: Optional[datetime] = None


class CommentCreate(BaseModel):
    fileId: ObjectIdStr
    body: str
    x: float = Field(..., ge=COORDINATE_MIN, le=COORDINATE_MAX)
    y: float = Field(..., ge=COORDINATE_MIN, le=COORDINATE_MAX)
    parentId: Optional[ObjectIdStr] = None
    annotation: Optional[str] = None

    @field_validator("body")
    @classmethod
    def body_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value
