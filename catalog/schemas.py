"""
Pydantic schemas for movie records and result sets.
"""
from pydantic import BaseModel, Field
from typing import List, Optional


# ===== MOVIE SCHEMAS =====

class MovieBase(BaseModel):
    """Fields shared by stored and incoming movies"""
    title: str = Field(min_length=1, max_length=300)
    genres: List[str] = []
    year: int = Field(ge=1870, le=2200)
    rating: float = Field(default=0.0, ge=0.0, le=10.0)
    description: str = ""
    popularity: float = Field(default=0.0, ge=0.0)


class MovieCreate(MovieBase):
    """Payload for creating a movie"""
    pass


class MovieUpdate(BaseModel):
    """Partial update - only fields that are set are written"""
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    genres: Optional[List[str]] = None
    year: Optional[int] = Field(default=None, ge=1870, le=2200)
    rating: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    description: Optional[str] = None
    popularity: Optional[float] = Field(default=None, ge=0.0)


class MovieRecord(MovieBase):
    """Movie as stored, with its id"""
    id: str

    class Config:
        from_attributes = True


# ===== RESULT SCHEMAS =====

class ResultSet(BaseModel):
    """A page of movies plus the total number of matches"""
    items: List[MovieRecord] = []
    total: int = 0
    offset: int = 0
    limit: int = 0

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ResultSet":
        return cls.model_validate_json(raw)
