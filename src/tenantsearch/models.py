"""Domain-facing models: searchable objects, geo points, tags and result sets.

The persistence layer owns domain objects; this module only describes what
the search layer needs from them (the `Searchable` protocol) and offers a
pydantic base class implementing it. Which fields become searchable is a
schema decision: declared fields opt in with `indexed()`, while undeclared
extra attributes (the object's open property map) are always indexed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    Generic,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticUndefined

from tenantsearch.pager import Pager

INDEXED_MARKER = "indexed"
TAG_TYPE = "tag"
TAG_FIELD = "tag"
TAGS_FIELD = "tags"

_FIELD_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

# Backends keep their bookkeeping under this name
RESERVED_FIELD = "sys"


def is_valid_field_name(name: str) -> bool:
    """Field names must be plain identifiers so backends can derive sub-fields from them."""
    return name != RESERVED_FIELD and bool(_FIELD_NAME_RE.match(name))


def indexed(default: Any = PydanticUndefined, **kwargs: Any) -> Any:
    """Declare a model field that should be written to the search index.

    Accepts the same arguments as `pydantic.Field`.
    """
    extra = dict(kwargs.pop("json_schema_extra", None) or {})
    extra[INDEXED_MARKER] = True
    return Field(default, json_schema_extra=extra, **kwargs)


@runtime_checkable
class Searchable(Protocol):
    """What the search layer needs from a domain object."""

    id: Optional[str]
    type: Optional[str]

    def indexable_fields(self) -> Mapping[str, Any]:
        """Return the field name -> value projection to index."""
        ...


class GeoPoint(BaseModel):
    """A latitude/longitude pair in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("lng", "lon"))

    @model_validator(mode="before")
    @classmethod
    def _parse_latlng_string(cls, data: Any) -> Any:
        # Accept the compact "lat,lng" form used by address records
        if isinstance(data, str):
            parts = [p.strip() for p in data.split(",")]
            if len(parts) != 2:
                raise ValueError(f"Expected 'lat,lng', got {data!r}")
            return {"lat": parts[0], "lng": parts[1]}
        if isinstance(data, (tuple, list)) and len(data) == 2:
            return {"lat": data[0], "lng": data[1]}
        return data


def as_geo_point(value: Any) -> Optional[GeoPoint]:
    """Return `value` as a GeoPoint if it is one or a plain ``{lat, lng|lon}`` mapping."""
    if isinstance(value, GeoPoint):
        return value
    if (
        isinstance(value, Mapping)
        and len(value) == 2
        and "lat" in value
        and ("lng" in value or "lon" in value)
    ):
        try:
            return GeoPoint.model_validate(dict(value))
        except PydanticValidationError:
            return None
    return None


class SearchableModel(BaseModel):
    """Pydantic base for searchable domain objects.

    `id` and `type` are always indexed. Declared fields are indexed only when
    declared with `indexed()`; extra attributes are always indexed.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Optional[str] = None

    @model_validator(mode="after")
    def _coerce_geo_extras(self) -> SearchableModel:
        # JSON input and hydrated records carry points as plain mappings
        extras = self.__pydantic_extra__ or {}
        for name, value in extras.items():
            point = as_geo_point(value)
            if point is not None:
                extras[name] = point
        return self

    def indexable_fields(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "type": self.type}
        for name, info in self.__class__.model_fields.items():
            if name in out:
                continue
            extra = info.json_schema_extra
            if isinstance(extra, dict) and extra.get(INDEXED_MARKER):
                value = getattr(self, name)
                if value is not None:
                    out[name] = value
        for name, value in (self.model_extra or {}).items():
            if value is not None:
                out[name] = value
        return out


class Tag(SearchableModel):
    """A tag record; searched by `find_tags`."""

    type: Optional[str] = TAG_TYPE
    tag: str = indexed("")
    count: int = indexed(0)

    @model_validator(mode="after")
    def _default_id(self) -> Tag:
        if not self.id and self.tag:
            self.id = f"tag:{self.tag}"
        return self


P = TypeVar("P")


@dataclass
class ResultSet(Generic[P]):
    """An ordered page of hydrated objects plus the pager state that produced it."""

    items: List[P] = field(default_factory=list)
    pager: Optional[Pager] = None
    # Hits dropped because they could not be hydrated into the requested model
    dropped: int = 0

    def __iter__(self) -> Iterator[P]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> P:
        return self.items[index]

    @property
    def total(self) -> int:
        return self.pager.count if self.pager is not None else len(self.items)

    @property
    def ids(self) -> List[Any]:
        return [getattr(item, "id", None) for item in self.items]
