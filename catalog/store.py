"""
Record store client.

Thin layer over the persistent store: runs finds for query descriptors and
applies create/update/delete. Owns retry/backoff for transient store errors;
owns no caching.
"""
import logging
import time
from typing import Callable, List, Optional, Protocol, TypeVar

from sqlalchemy import asc, desc
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import RecordNotFoundError, StoreError
from .models import Movie, MovieGenre
from .query import OperationKind, QueryDescriptor, normalize_text
from .schemas import MovieCreate, MovieRecord, MovieUpdate, ResultSet

logger = logging.getLogger("catalog.store")

T = TypeVar("T")


class RecordStoreClient(Protocol):
    """What the cache coordinator and catalog service need from a store."""

    def find(self, descriptor: QueryDescriptor) -> ResultSet: ...

    def get(self, record_id: str) -> Optional[MovieRecord]: ...

    def insert(self, movie: MovieCreate) -> MovieRecord: ...

    def update(self, record_id: str, changes: MovieUpdate) -> MovieRecord: ...

    def delete(self, record_id: str) -> None: ...


# sort key -> (column, direction)
SORT_COLUMNS = {
    "title": (Movie.title, asc),
    "-title": (Movie.title, desc),
    "year": (Movie.year, asc),
    "-year": (Movie.year, desc),
    "rating": (Movie.rating, asc),
    "-rating": (Movie.rating, desc),
    "popularity": (Movie.popularity, asc),
    "-popularity": (Movie.popularity, desc),
}


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _clean_genres(genres: List[str]) -> List[str]:
    """Strip names and drop empty / duplicate names (compared normalized), keeping order."""
    seen = set()
    result = []
    for name in genres:
        name = name.strip()
        key = normalize_text(name)
        if key and key not in seen:
            seen.add(key)
            result.append(name)
    return result


def _set_genres(movie: Movie, genres: List[str]) -> None:
    movie.genre_rows = [
        MovieGenre(name=name, name_key=normalize_text(name), position=i)
        for i, name in enumerate(_clean_genres(genres))
    ]


def _search_text(title: str, description: str) -> str:
    # Normalized query text never contains a newline, so matches cannot span both fields
    return f"{normalize_text(title)}\n{normalize_text(description)}"


def _to_record(movie: Movie) -> MovieRecord:
    return MovieRecord.model_validate(movie)


class SqlRecordStore:
    """
    SQLAlchemy-backed record store.

    Transient OperationalErrors are retried with exponential backoff;
    anything else from SQLAlchemy surfaces as StoreError.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        retry_attempts: int = 3,
        retry_backoff: float = 0.1,
    ):
        self._session_factory = session_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self._retry_attempts + 1):
            try:
                return fn()
            except OperationalError as e:
                if attempt == self._retry_attempts:
                    logger.error(f"Store {operation} failed after {attempt} attempts: {e}")
                    raise StoreError(
                        f"Store {operation} failed", {"attempts": attempt}
                    ) from e
                delay = self._retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Store {operation} attempt {attempt} failed, retrying in {delay:.2f}s: {e}"
                )
                time.sleep(delay)
            except SQLAlchemyError as e:
                logger.error(f"Store {operation} failed: {e}")
                raise StoreError(f"Store {operation} failed") from e
        raise StoreError(f"Store {operation} failed")  # unreachable with attempts >= 1

    # ===== READS =====

    def find(self, descriptor: QueryDescriptor) -> ResultSet:
        """Run the query a descriptor describes and return one page."""
        return self._run("find", lambda: self._find(descriptor))

    def _find(self, descriptor: QueryDescriptor) -> ResultSet:
        with self._session_factory() as session:
            if descriptor.kind is OperationKind.GET:
                movie = session.get(Movie, descriptor.record_id)
                items = [_to_record(movie)] if movie is not None else []
                return ResultSet(items=items, total=len(items), offset=0, limit=descriptor.limit)

            query = self._filtered(session, descriptor)
            total = query.count()

            if descriptor.kind is OperationKind.POPULAR:
                order = [desc(Movie.popularity), desc(Movie.rating), asc(Movie.id)]
            elif descriptor.kind is OperationKind.RECOMMENDATIONS:
                order = [desc(Movie.rating), desc(Movie.popularity), asc(Movie.id)]
            else:
                column, direction = SORT_COLUMNS[descriptor.sort]
                order = [direction(column), asc(Movie.id)]

            movies = (
                query.order_by(*order)
                .offset(descriptor.offset)
                .limit(descriptor.limit)
                .all()
            )
            return ResultSet(
                items=[_to_record(m) for m in movies],
                total=total,
                offset=descriptor.offset,
                limit=descriptor.limit,
            )

    def _filtered(self, session: Session, descriptor: QueryDescriptor):
        query = session.query(Movie)

        if descriptor.text:
            pattern = f"%{_escape_like(descriptor.text)}%"
            query = query.filter(Movie.search_text.like(pattern, escape="\\"))

        # Every requested genre must be present
        for genre in descriptor.genres:
            query = query.filter(Movie.genre_rows.any(MovieGenre.name_key == genre))

        if descriptor.year_min is not None:
            query = query.filter(Movie.year >= descriptor.year_min)
        if descriptor.year_max is not None:
            query = query.filter(Movie.year <= descriptor.year_max)

        return query

    def get(self, record_id: str) -> Optional[MovieRecord]:
        def _get():
            with self._session_factory() as session:
                movie = session.get(Movie, record_id)
                return _to_record(movie) if movie is not None else None
        return self._run("get", _get)

    # ===== WRITES =====

    def insert(self, movie: MovieCreate) -> MovieRecord:
        def _insert():
            with self._session_factory.begin() as session:
                row = Movie(
                    title=movie.title.strip(),
                    year=movie.year,
                    rating=movie.rating,
                    description=movie.description,
                    popularity=movie.popularity,
                    search_text=_search_text(movie.title, movie.description),
                )
                _set_genres(row, movie.genres)
                session.add(row)
                session.flush()
                return _to_record(row)
        record = self._run("insert", _insert)
        logger.info(f"Inserted movie {record.id} ('{record.title}')")
        return record

    def update(self, record_id: str, changes: MovieUpdate) -> MovieRecord:
        def _update():
            with self._session_factory.begin() as session:
                row = session.get(Movie, record_id)
                if row is None:
                    raise RecordNotFoundError(record_id)
                fields = changes.model_dump(exclude_unset=True)
                genres = fields.pop("genres", None)
                for name, value in fields.items():
                    if value is None:
                        continue
                    setattr(row, name, value.strip() if name == "title" else value)
                row.search_text = _search_text(row.title, row.description)
                if genres is not None:
                    # Old rows must be gone before new ones hit the unique constraint
                    row.genre_rows.clear()
                    session.flush()
                    _set_genres(row, genres)
                session.flush()
                return _to_record(row)
        record = self._run("update", _update)
        logger.info(f"Updated movie {record_id}")
        return record

    def delete(self, record_id: str) -> None:
        def _delete():
            with self._session_factory.begin() as session:
                row = session.get(Movie, record_id)
                if row is None:
                    raise RecordNotFoundError(record_id)
                session.delete(row)
        self._run("delete", _delete)
        logger.info(f"Deleted movie {record_id}")
