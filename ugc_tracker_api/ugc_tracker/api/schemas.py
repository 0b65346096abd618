from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Any] = None


class CreatorCreateRequest(BaseModel):
    username: str = Field(..., min_length=1, description="TikTok handle, with or without @")
    display_name: Optional[str] = None
    external_id: Optional[str] = None
    is_active: bool = True


class CreatorUpdateRequest(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    display_name: Optional[str] = None
    is_active: Optional[bool] = None
    follower_count: Optional[int] = Field(None, ge=0)


class CreatorItem(BaseModel):
    id: int
    username: str
    display_name: Optional[str] = None
    platform: str
    is_active: bool
    followers: int = 0
    posts_count: int = 0
    last_post_at: Optional[str] = None
    created_at: Optional[str] = None


class CreatorListResponse(BaseModel):
    ok: bool = True
    items: List[CreatorItem]
    count: int


class StatValues(BaseModel):
    views: int
    likes: int
    comments: int
    shares: int


class PostStatsUpdateRequest(BaseModel):
    # Validated by the route through `invalid_reason` (400 on bad input).
    views: Any = None
    likes: Any = None
    comments: Any = None
    shares: Any = None

    def invalid_reason(self) -> Optional[str]:
        values = [self.views, self.likes, self.comments, self.shares]
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
            return "Invalid input: all values must be numbers"
        if any(v < 0 for v in values):
            return "Invalid input: values cannot be negative"
        return None

    def to_values(self) -> Dict[str, int]:
        return {
            "views": int(self.views),
            "likes": int(self.likes),
            "comments": int(self.comments),
            "shares": int(self.shares),
        }


class PostStatsActionRequest(BaseModel):
    action: str


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
