"""
Database models for the movie catalog
SQLAlchemy ORM models for movies and their genres
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


class Movie(Base):
    """
    Movie entity - one document per movie
    Genres live in movie_genres so they can be filtered on
    """
    __tablename__ = "movies"

    id = Column(String(32), primary_key=True, default=_new_id)
    title = Column(String, nullable=False, index=True)
    year = Column(Integer, nullable=False, index=True)
    rating = Column(Float, nullable=False, default=0.0)
    description = Column(Text, nullable=False, default="")
    popularity = Column(Float, nullable=False, default=0.0, index=True)
    # Normalized "title\ndescription", matched by search
    search_text = Column(Text, nullable=False, default="")
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    genre_rows = relationship(
        "MovieGenre",
        back_populates="movie",
        cascade="all, delete-orphan",
        order_by="MovieGenre.position",
        lazy="selectin",
    )

    @property
    def genres(self) -> list:
        return [row.name for row in self.genre_rows]

    def __repr__(self):
        return f"<Movie(id={self.id}, title='{self.title}', year={self.year})>"


class MovieGenre(Base):
    """
    Genre tag on a movie - one row per (movie, genre)
    """
    __tablename__ = "movie_genres"

    id = Column(Integer, primary_key=True, autoincrement=True)
    movie_id = Column(String(32), ForeignKey("movies.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    # Normalized copy for filtering
    name_key = Column(String, nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    # Relationships
    movie = relationship("Movie", back_populates="genre_rows")

    # Constraints
    __table_args__ = (
        UniqueConstraint("movie_id", "name_key", name="uix_movie_genre"),
    )

    def __repr__(self):
        return f"<MovieGenre(movie_id={self.movie_id}, name='{self.name}')>"
