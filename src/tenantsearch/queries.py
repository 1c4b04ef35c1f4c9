"""Query descriptors: one frozen dataclass per supported query shape.

Together they form a tagged union keyed by `QueryShape`; translators
dispatch on `query.shape` exactly once instead of exposing one method per
shape and tenant overload. Every descriptor carries the optional `type`
filter (``None`` or ``""`` means all object types).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Mapping, Optional, Tuple, Union

from tenantsearch.exceptions import ValidationError
from tenantsearch.models import TAG_FIELD, TAG_TYPE, TAGS_FIELD


class QueryShape(str, Enum):
    BY_ID = "by_id"
    FULL_TEXT = "full_text"
    PREFIX = "prefix"
    WILDCARD = "wildcard"
    TERMS = "terms"
    TERM_IN_LIST = "term_in_list"
    TAGGED = "tagged"
    SIMILAR = "similar"
    NEARBY = "nearby"
    TAGS = "tags"


# Shapes whose natural order is relevance rather than id
RANKED_SHAPES = frozenset({QueryShape.FULL_TEXT, QueryShape.SIMILAR})

MATCH_ALL = "*"


@dataclass(frozen=True, slots=True, kw_only=True)
class BaseQuery:
    shape: ClassVar[QueryShape]

    type: Optional[str] = None

    @property
    def type_filter(self) -> Optional[str]:
        return self.type or None


@dataclass(frozen=True, slots=True, kw_only=True)
class ById(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.BY_ID

    id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class FullText(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.FULL_TEXT

    query: str = MATCH_ALL

    @property
    def matches_all(self) -> bool:
        return not self.query or not self.query.strip() or self.query.strip() == MATCH_ALL


@dataclass(frozen=True, slots=True, kw_only=True)
class Prefix(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.PREFIX

    field: str
    prefix: str


@dataclass(frozen=True, slots=True, kw_only=True)
class Wildcard(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.WILDCARD

    field: str
    pattern: str


@dataclass(frozen=True, slots=True, kw_only=True)
class Terms(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.TERMS

    terms: Mapping[str, Any] = field(default_factory=dict)
    match_all: bool = True


@dataclass(frozen=True, slots=True, kw_only=True)
class TermInList(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.TERM_IN_LIST

    field: str
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class Tagged(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.TAGGED

    tags: Tuple[str, ...] = ()
    field: str = TAGS_FIELD


@dataclass(frozen=True, slots=True, kw_only=True)
class Similar(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.SIMILAR

    fields: Tuple[str, ...]
    text: str
    exclude_id: Optional[str] = None


@dataclass(frozen=True, slots=True, kw_only=True)
class Nearby(BaseQuery):
    shape: ClassVar[QueryShape] = QueryShape.NEARBY

    lat: float
    lng: float
    radius_km: float
    query: str = MATCH_ALL

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0 or not -180.0 <= self.lng <= 180.0:
            raise ValidationError(f"Invalid coordinates: {self.lat}, {self.lng}")
        if self.radius_km < 0:
            raise ValidationError(f"Radius must not be negative: {self.radius_km}")

    @property
    def matches_all(self) -> bool:
        return not self.query or not self.query.strip() or self.query.strip() == MATCH_ALL


@dataclass(frozen=True, slots=True, kw_only=True)
class Tags(BaseQuery):
    """Keyword search over tag records (a narrower form of `Prefix`)."""

    shape: ClassVar[QueryShape] = QueryShape.TAGS

    keyword: str

    @property
    def type_filter(self) -> Optional[str]:
        return TAG_TYPE

    def as_prefix(self) -> Prefix:
        return Prefix(type=TAG_TYPE, field=TAG_FIELD, prefix=self.keyword.strip())


QueryDescriptor = Union[
    ById, FullText, Prefix, Wildcard, Terms, TermInList, Tagged, Similar, Nearby, Tags
]


QUERY_TYPES: Mapping[QueryShape, type] = {
    cls.shape: cls
    for cls in (ById, FullText, Prefix, Wildcard, Terms, TermInList, Tagged, Similar, Nearby, Tags)
}

_TUPLE_FIELDS = frozenset({"values", "tags", "fields"})


def build_query(shape: str, params: Mapping[str, Any], type_: Optional[str] = None) -> QueryDescriptor:
    """Build a descriptor from a shape name and plain parameters (e.g. decoded JSON)."""
    try:
        cls = QUERY_TYPES[QueryShape(shape)]
    except ValueError:
        raise ValidationError(f"Unknown query shape: {shape!r}") from None
    kwargs = {k: tuple(v) if k in _TUPLE_FIELDS and isinstance(v, list) else v for k, v in params.items()}
    if type_ is not None:
        kwargs["type"] = type_
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValidationError(f"Bad parameters for {shape} query: {exc}") from exc
