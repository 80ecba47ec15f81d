"""Query normalization for catalog reads.

Turns raw request parameters into a canonical, hashable QueryDescriptor.
Two requests that mean the same thing (reordered genres, different casing,
extra whitespace) produce byte-identical encodings, which is what cache keys
are derived from.
"""

import json
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from config.settings import Settings, settings as default_settings

from .errors import QueryValidationError


class OperationKind(Enum):
    """Read operations the catalog serves."""
    LIST = "list"
    SEARCH = "search"
    POPULAR = "popular"
    RECOMMENDATIONS = "recommendations"
    GET = "get"


# Kinds answered by one global result under a fixed cache key
FEATURED_KINDS = (OperationKind.POPULAR, OperationKind.RECOMMENDATIONS)

KIND_ALIASES = {
    "get-by-id": "get",
    "get_by_id": "get",
    "recommended": "recommendations",
}

SORT_ORDERS = (
    "title", "-title",
    "year", "-year",
    "rating", "-rating",
    "popularity", "-popularity",
)
DEFAULT_SORT = "title"

# Fixed ordering for the featured lists
FEATURED_SORT = {
    OperationKind.POPULAR: "-popularity",
    OperationKind.RECOMMENDATIONS: "-rating",
}

MAX_ID_LENGTH = 64

_INT_RE = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class QueryDescriptor:
    """Normalized read request. Immutable and hashable."""
    kind: OperationKind
    text: str = ""
    genres: Tuple[str, ...] = field(default_factory=tuple)
    year_min: Optional[int] = None
    year_max: Optional[int] = None
    offset: int = 0
    limit: int = 1
    sort: str = DEFAULT_SORT
    record_id: Optional[str] = None

    @property
    def is_collection(self) -> bool:
        return self.kind is not OperationKind.GET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "genres": list(self.genres),
            "year_min": self.year_min,
            "year_max": self.year_max,
            "offset": self.offset,
            "limit": self.limit,
            "sort": self.sort,
            "record_id": self.record_id,
        }

    def encode(self) -> bytes:
        """Canonical byte encoding used for cache key derivation."""
        return json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=True
        ).encode("ascii")

    def to_params(self) -> Dict[str, Any]:
        """Raw parameters that normalize back to this descriptor."""
        params: Dict[str, Any] = {
            "kind": self.kind.value,
            "offset": self.offset,
            "limit": self.limit,
            "sort": self.sort,
        }
        if self.text:
            params["q"] = self.text
        if self.genres:
            params["genre"] = list(self.genres)
        if self.year_min is not None:
            params["year_min"] = self.year_min
        if self.year_max is not None:
            params["year_max"] = self.year_max
        if self.record_id is not None:
            params["id"] = self.record_id
        return params


def normalize_text(text: str) -> str:
    """
    Normalize search text.

    Steps:
    1. Unicode NFKC
    2. Case-fold
    3. Collapse internal whitespace and trim
    """
    text = unicodedata.normalize("NFKC", text).casefold()
    return re.sub(r"\s+", " ", text).strip()


def _parse_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise QueryValidationError(f"{name} must be an integer", {"field": name})
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise QueryValidationError(f"{name} must be an integer", {"field": name, "value": str(value)})


def _parse_kind(value: Any) -> OperationKind:
    raw = str(value if value is not None else "list").strip().lower()
    raw = KIND_ALIASES.get(raw, raw)
    try:
        return OperationKind(raw)
    except ValueError:
        raise QueryValidationError(f"Unknown query kind '{raw}'", {"field": "kind"})


def _parse_genres(value: Any) -> Tuple[str, ...]:
    """Accept 'a,b', ['a', 'b'] or ['a,b']; return sorted, de-duplicated, case-folded."""
    if value is None:
        return ()
    if isinstance(value, str):
        parts = [value]
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = list(value)
    else:
        raise QueryValidationError("genre must be a string or list of strings", {"field": "genre"})

    genres = set()
    for part in parts:
        if not isinstance(part, str):
            raise QueryValidationError("genre must be a string or list of strings", {"field": "genre"})
        for name in part.split(","):
            name = normalize_text(name)
            if name:
                genres.add(name)
    return tuple(sorted(genres))


def normalize(raw_params: Mapping[str, Any], settings: Optional[Settings] = None) -> QueryDescriptor:
    """
    Build a QueryDescriptor from raw request parameters.

    Recognized keys: kind, q (or text), genre, year, year_min, year_max,
    offset, limit, sort, id.

    Raises:
        QueryValidationError: text too long, empty search, bad numbers,
            inverted year range, unknown kind or sort, missing id
    """
    settings = settings or default_settings
    kind = _parse_kind(raw_params.get("kind"))

    if kind is OperationKind.GET:
        record_id = raw_params.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            raise QueryValidationError("id is required", {"field": "id"})
        record_id = record_id.strip()
        if len(record_id) > MAX_ID_LENGTH:
            raise QueryValidationError("id is too long", {"field": "id"})
        return QueryDescriptor(kind=kind, limit=1, record_id=record_id)

    if kind in FEATURED_KINDS:
        # One global list per kind; caller filters and paging do not apply
        return QueryDescriptor(
            kind=kind,
            offset=0,
            limit=max(1, settings.featured_size),
            sort=FEATURED_SORT[kind],
        )

    text = ""
    if kind is OperationKind.SEARCH:
        raw_text = raw_params.get("q", raw_params.get("text"))
        if raw_text is not None and not isinstance(raw_text, str):
            raise QueryValidationError("q must be a string", {"field": "q"})
        text = normalize_text(raw_text or "")
        if not text:
            raise QueryValidationError("Search text is required", {"field": "q"})
        if len(text) > settings.max_search_length:
            raise QueryValidationError(
                f"Search text exceeds {settings.max_search_length} characters",
                {"field": "q", "max_length": settings.max_search_length},
            )

    genres = _parse_genres(raw_params.get("genre", raw_params.get("genres")))

    year = _parse_int("year", raw_params.get("year"))
    year_min = _parse_int("year_min", raw_params.get("year_min"))
    year_max = _parse_int("year_max", raw_params.get("year_max"))
    if year is not None:
        if year_min is not None or year_max is not None:
            raise QueryValidationError(
                "Use either year or year_min/year_max", {"field": "year"}
            )
        year_min = year_max = year
    if year_min is not None and year_max is not None and year_min > year_max:
        raise QueryValidationError(
            "year_min must not be greater than year_max",
            {"year_min": year_min, "year_max": year_max},
        )

    offset = _parse_int("offset", raw_params.get("offset"))
    offset = 0 if offset is None else offset
    if offset < 0:
        raise QueryValidationError("offset must not be negative", {"field": "offset"})

    limit = _parse_int("limit", raw_params.get("limit"))
    if limit is None:
        limit = settings.default_page_limit
    limit = max(1, min(limit, settings.max_page_limit))

    sort = raw_params.get("sort") or DEFAULT_SORT
    if not isinstance(sort, str) or sort.strip().lower() not in SORT_ORDERS:
        raise QueryValidationError(
            f"Unknown sort '{sort}'", {"field": "sort", "allowed": list(SORT_ORDERS)}
        )
    sort = sort.strip().lower()

    return QueryDescriptor(
        kind=kind,
        text=text,
        genres=genres,
        year_min=year_min,
        year_max=year_max,
        offset=offset,
        limit=limit,
        sort=sort,
    )
