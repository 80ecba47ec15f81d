"""
Tests for the SQLAlchemy record store: filtering, sorting, paging, writes, retry.
"""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from catalog.errors import RecordNotFoundError, StoreError
from catalog.schemas import MovieCreate, MovieUpdate
from catalog.store import SqlRecordStore


def _titles(result):
    return [m.title for m in result.items]


def test_list_sorted_by_title_with_total(sql_store, seed_movies, describe):
    """Test that a list page is sorted by title and reports the full total"""
    result = sql_store.find(describe(kind="list", limit=2))
    assert _titles(result) == ["Arrival", "Blade Runner"]
    assert result.total == 5
    assert (result.offset, result.limit) == (0, 2)


def test_pagination_offset(sql_store, seed_movies, describe):
    """Test that offset skips earlier rows"""
    result = sql_store.find(describe(kind="list", offset=2, limit=2))
    assert _titles(result) == ["Dune", "Heat"]


def test_genre_filter_requires_every_genre(sql_store, seed_movies, describe):
    """Test that several genres are combined with AND"""
    assert _titles(sql_store.find(describe(kind="list", genre="sci-fi"))) == [
        "Arrival", "Blade Runner", "Dune",
    ]
    assert _titles(sql_store.find(describe(kind="list", genre=["SCI-FI", "drama"]))) == ["Arrival"]


def test_genre_filter_matches_name_as_written(sql_store, describe):
    """Test that a genre with odd spacing or width is found by the same string"""
    sql_store.insert(MovieCreate(title="Contact", genres=["Science  Fiction"], year=1997))
    sql_store.insert(MovieCreate(title="Akira", genres=["Ａｎｉｍｅ"], year=1988))

    assert _titles(sql_store.find(describe(kind="list", genre="Science  Fiction"))) == ["Contact"]
    assert _titles(sql_store.find(describe(kind="list", genre="science fiction"))) == ["Contact"]
    assert _titles(sql_store.find(describe(kind="list", genre="Ａｎｉｍｅ"))) == ["Akira"]
    assert _titles(sql_store.find(describe(kind="list", genre="anime"))) == ["Akira"]


def test_year_range_and_sort(sql_store, seed_movies, describe):
    """Test that year_min and a descending sort combine"""
    result = sql_store.find(describe(kind="list", year_min=2000, sort="-year"))
    assert _titles(result) == ["Dune", "Paddington 2", "Arrival"]


def test_search_matches_title_and_description(sql_store, seed_movies, describe):
    """Test that search looks at both title and description"""
    assert _titles(sql_store.find(describe(kind="search", q="DUNE"))) == ["Dune"]
    assert _titles(sql_store.find(describe(kind="search", q="heist"))) == ["Heat"]


def test_search_matches_non_ascii_text_as_written(sql_store, describe):
    """Test that non-ASCII titles are found by their own spelling and by case"""
    sql_store.insert(MovieCreate(title="Straße", year=2001))
    sql_store.insert(MovieCreate(title="ÉTÉ", year=2002, description="Un film d'été"))

    assert _titles(sql_store.find(describe(kind="search", q="Straße"))) == ["Straße"]
    assert _titles(sql_store.find(describe(kind="search", q="STRASSE"))) == ["Straße"]
    assert _titles(sql_store.find(describe(kind="search", q="ÉTÉ"))) == ["ÉTÉ"]
    assert _titles(sql_store.find(describe(kind="search", q="été"))) == ["ÉTÉ"]


def test_search_does_not_match_across_title_and_description(sql_store, describe):
    """Test that a phrase split over title and description is not a match"""
    sql_store.insert(MovieCreate(title="Heat", year=1995, description="Crews clash"))
    assert sql_store.find(describe(kind="search", q="heat crews")).total == 0


def test_search_follows_updated_title(sql_store, seed_movies, describe):
    """Test that search sees a renamed title"""
    movie = seed_movies[0]
    sql_store.update(movie.id, MovieUpdate(title="Ödland"))
    assert _titles(sql_store.find(describe(kind="search", q="ödland"))) == ["Ödland"]
    assert sql_store.find(describe(kind="search", q=movie.title)).total == 0


def test_search_treats_wildcards_literally(sql_store, seed_movies, describe):
    """Test that % and _ in search text are not wildcards"""
    assert sql_store.find(describe(kind="search", q="%")).total == 0
    assert sql_store.find(describe(kind="search", q="_")).total == 0


def test_get_by_id(sql_store, seed_movies, describe):
    """Test that a get descriptor returns the one record or nothing"""
    movie = seed_movies[0]
    result = sql_store.find(describe(kind="get", id=movie.id))
    assert result.items == [movie]
    assert sql_store.find(describe(kind="get", id="nope")).items == []


def test_insert_cleans_genres(sql_store):
    """Test that insert trims the title and drops blank or duplicate genres"""
    record = sql_store.insert(
        MovieCreate(
            title="  Alien ",
            genres=["Horror", " horror", "Sci-Fi", "", "HORROR "],
            year=1979,
        )
    )
    assert record.title == "Alien"
    assert record.genres == ["Horror", "Sci-Fi"]
    assert len(record.id) == 32


def test_partial_update_keeps_other_fields(sql_store, seed_movies):
    """Test that update only changes the fields it is given"""
    movie = seed_movies[0]
    updated = sql_store.update(movie.id, MovieUpdate(year=2024, genres=["Sci-Fi", "Epic"]))
    assert updated.year == 2024
    assert updated.genres == ["Sci-Fi", "Epic"]
    assert updated.title == movie.title
    assert sql_store.get(movie.id) == updated


def test_delete(sql_store, seed_movies):
    """Test that delete removes the record and a second delete is not found"""
    movie = seed_movies[0]
    sql_store.delete(movie.id)
    assert sql_store.get(movie.id) is None
    with pytest.raises(RecordNotFoundError):
        sql_store.delete(movie.id)


def test_transient_errors_are_retried():
    """Test that OperationalError is retried until it succeeds"""
    store = SqlRecordStore(session_factory=None, retry_attempts=3, retry_backoff=0.0)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return "ok"

    assert store._run("find", flaky) == "ok"
    assert len(attempts) == 3


def test_retries_exhausted_raise_store_error():
    """Test that running out of retries raises StoreError"""
    store = SqlRecordStore(session_factory=None, retry_attempts=2, retry_backoff=0.0)

    def always_locked():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    with pytest.raises(StoreError):
        store._run("find", always_locked)


def test_other_database_errors_are_not_retried():
    """Test that non-transient database errors fail on the first attempt"""
    store = SqlRecordStore(session_factory=None, retry_attempts=3, retry_backoff=0.0)
    attempts = []

    def broken():
        attempts.append(1)
        raise IntegrityError("INSERT", {}, Exception("constraint"))

    with pytest.raises(StoreError):
        store._run("insert", broken)
    assert len(attempts) == 1
