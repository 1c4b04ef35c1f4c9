import math
from typing import Any, List, Optional

import pytest

from tenantsearch.backends.base import EARTH_RADIUS_KM
from tenantsearch.backends.whoosh_backend import WhooshBackend
from tenantsearch.config import Settings
from tenantsearch.exceptions import ConfigurationError, ValidationError
from tenantsearch.facade import SearchFacade
from tenantsearch.models import GeoPoint, SearchableModel, Tag, indexed
from tenantsearch.pager import Pager

KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class User(SearchableModel):
    type: Optional[str] = "user"
    name: str = indexed("")
    city: Optional[str] = indexed(None)
    age: Optional[int] = indexed(None)
    password: Optional[str] = None


class Venue(SearchableModel):
    type: Optional[str] = "venue"
    name: str = indexed("")
    latlng: Optional[GeoPoint] = indexed(None)


class StrictProfile(SearchableModel):
    type: Optional[str] = "user"
    nickname: str


def make_facade(clock: FakeClock, default_app_id: Optional[str] = "acme") -> SearchFacade:
    settings = Settings()
    settings.search.default_app_id = default_app_id
    settings.search.default_page_size = 30
    settings.search.batch_size = 2
    backend = WhooshBackend(geo_field="latlng", clock=clock)
    return SearchFacade.from_settings(settings, backend=backend, clock=clock)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def facade(clock: FakeClock) -> SearchFacade:
    return make_facade(clock)


def _users() -> List[User]:
    return [
        User(id="u1", name="Alice Smith", city="Sofia", age=31),
        User(id="u2", name="Bob Jones", city="Sofia", age=25),
        User(id="u3", name="Carol Alison", city="Plovdiv", age=40),
    ]


def test_find_by_id_returns_indexed_projection(facade: SearchFacade) -> None:
    facade.index(User(id="u1", name="Alice", city="Sofia", password="hunter2", shoe=42))
    found = facade.find_by_id("u1", model=User)
    assert found is not None
    assert found.name == "Alice"
    assert found.city == "Sofia"
    assert found.password is None
    assert found.model_extra == {"shoe": 42}
    assert facade.find_by_id("missing") is None
    assert facade.find_by_id("") is None


def test_tenants_are_isolated(facade: SearchFacade) -> None:
    facade.index(User(id="u1", name="Alice"), appid="tenantA")
    assert facade.find_by_id("u1", appid="tenantA") is not None
    assert facade.find_by_id("u1", appid="tenantB") is None
    assert facade.find_by_id("u1", appid="tenanta") is None
    assert facade.get_count("user", appid="tenantA") == 1
    assert facade.get_count("user", appid="tenantB") == 0


def test_reindexing_is_idempotent(facade: SearchFacade) -> None:
    facade.index(User(id="u1", name="Alice"))
    facade.index(User(id="u1", name="Alice Cooper"))
    assert facade.get_count("user") == 1
    found = facade.find_by_id("u1", model=User)
    assert found is not None and found.name == "Alice Cooper"


def test_unindex_removes_object(facade: SearchFacade) -> None:
    facade.index_all(_users())
    facade.unindex(User(id="u2"))
    facade.unindex(User(id="nope"))
    assert facade.find_by_id("u2") is None
    assert facade.get_count("user") == 2


def test_batch_index_and_unindex(facade: SearchFacade) -> None:
    report = facade.index_all(_users() + [User(id=None, name="ghost")])
    assert report.succeeded == 3
    assert len(report.failures) == 1
    assert facade.get_count("user") == 3
    report = facade.unindex_all(_users()[:2])
    assert report.ok
    assert facade.get_count("user") == 1


def test_full_text_query(facade: SearchFacade) -> None:
    facade.index_all(_users())
    result = facade.find_query("user", "alice", Pager())
    assert result.ids[0] == "u1"
    assert set(result.ids) <= {"u1", "u3"}
    everything = facade.find_query("user", "*", Pager())
    assert everything.ids == ["u1", "u2", "u3"]
    assert everything.pager is not None and everything.pager.count == 3


def test_type_filter_scopes_results(facade: SearchFacade) -> None:
    facade.index_all(_users())
    facade.index(Venue(id="v1", name="Alice's bar"))
    assert facade.find_query("venue", "*", Pager()).ids == ["v1"]
    assert len(facade.find_query(None, "*", Pager())) == 4
    assert facade.get_count() == 4


def test_terms_and_or(facade: SearchFacade) -> None:
    facade.index_all(_users())
    both = facade.find_terms("user", {"city": "sofia", "age": 25}, Pager())
    assert both.ids == ["u2"]
    either = facade.find_terms("user", {"city": "Plovdiv", "age": 25}, Pager(), match_all=False)
    assert either.ids == ["u2", "u3"]
    assert facade.get_count("user", {"city": "Sofia"}) == 2
    assert facade.get_count("user", {"city": "Nowhere"}) == 0
    assert facade.find_terms("user", {"unknown_field": "x"}, Pager()).ids == []


def test_prefix_is_case_insensitive(facade: SearchFacade) -> None:
    facade.index_all(_users())
    assert facade.find_prefix("user", "name", "al", Pager()).ids == ["u1"]
    assert facade.find_prefix("user", "name", "AL", Pager()).ids == ["u1"]
    assert facade.find_prefix("user", "city", "so", Pager()).ids == ["u1", "u2"]


def test_wildcard(facade: SearchFacade) -> None:
    facade.index_all(_users())
    assert facade.find_wildcard("user", "city", "?ofi*", Pager()).ids == ["u1", "u2"]
    assert facade.find_wildcard("user", "id", "u*", Pager()).ids == ["u1", "u2", "u3"]


def test_term_in_list(facade: SearchFacade) -> None:
    facade.index_all(_users())
    result = facade.find_term_in_list("user", "city", ["Plovdiv", "Varna"], Pager())
    assert result.ids == ["u3"]
    assert facade.find_term_in_list("user", "id", ["u1", "u3"], Pager()).ids == ["u1", "u3"]
    assert facade.find_term_in_list("user", "city", [], Pager()).ids == []


def test_tagged_requires_every_tag(facade: SearchFacade) -> None:
    facade.index(SearchableModel(id="p1", type="post", tags=["Python", "search"]))
    facade.index(SearchableModel(id="p2", type="post", tags=["python"]))
    facade.index(SearchableModel(id="p3", type="post", tags=["search", "python", "whoosh"]))
    result = facade.find_tagged("post", ["python", "search"], Pager())
    assert result.ids == ["p1", "p3"]
    assert facade.find_tagged("post", ["python"], Pager()).ids == ["p1", "p2", "p3"]
    assert facade.find_tagged("post", [], Pager()).ids == []


def test_similar_excludes_reference(facade: SearchFacade) -> None:
    facade.index(SearchableModel(id="a1", type="article", body="python search engines and indexing"))
    facade.index(SearchableModel(id="a2", type="article", body="indexing documents with python"))
    facade.index(SearchableModel(id="a3", type="article", body="gardening tips for tomatoes"))
    result = facade.find_similar(
        "article", ["body"], "python search engines and indexing", Pager(), exclude_id="a1"
    )
    assert result.ids == ["a2"]


def test_nearby_orders_by_distance(facade: SearchFacade) -> None:
    for km in (1, 5, 20):
        facade.index(
            Venue(id=f"v{km}", name=f"venue {km}", latlng=GeoPoint(lat=km / KM_PER_DEGREE, lng=0.0))
        )
    facade.index(SearchableModel(id="nowhere", type="venue", name="no location"))
    result = facade.find_nearby("venue", 0.0, 0.0, 10, Pager())
    assert result.ids == ["v1", "v5"]
    assert facade.find_nearby("venue", 0.0, 0.0, 0.5, Pager()).ids == []
    assert facade.find_nearby("venue", 0.0, 0.0, 30, Pager(), query="venue").ids == ["v1", "v5", "v20"]


def test_nearby_rejects_bad_coordinates(facade: SearchFacade) -> None:
    with pytest.raises(ValidationError):
        facade.find_nearby("venue", 91.0, 0.0, 10, Pager())
    with pytest.raises(ValidationError):
        facade.find_nearby("venue", 0.0, 0.0, -1, Pager())


def test_find_tags_by_keyword(facade: SearchFacade) -> None:
    facade.index_all([Tag(tag="python"), Tag(tag="pydantic"), Tag(tag="rust")])
    facade.index(SearchableModel(id="x", type="note", tag="pyramid"))
    result = facade.find_tags("Py", Pager(), model=Tag)
    assert sorted(t.tag for t in result) == ["pydantic", "python"]
    assert facade.find_tags("  ", Pager()).ids == []


def test_pagination_returns_every_hit_once(facade: SearchFacade) -> None:
    facade.index_all([User(id=f"u{i:02d}", name=f"user {i}") for i in range(7)])
    pager = Pager(limit=3)
    seen: List[Any] = []
    pages = 0
    while True:
        result = facade.find_query("user", "*", pager)
        seen.extend(result.ids)
        pages += 1
        assert pager.count == 7
        if not pager.advance():
            break
    assert pages == 3
    assert seen == [f"u{i:02d}" for i in range(7)]


def test_page_numbers_and_sorting(facade: SearchFacade) -> None:
    facade.index_all(_users() + [User(id="u4", name="Dan")])
    by_age = facade.find_query("user", "*", Pager(sort_field="age", sort_ascending=False))
    # Missing values sort last
    assert by_age.ids == ["u3", "u1", "u2", "u4"]
    second = facade.find_query("user", "*", Pager(page=2, limit=3))
    assert second.ids == ["u4"]
    assert second.pager is not None and second.pager.next_cursor is None


def test_ttl_expires_entries(facade: SearchFacade, clock: FakeClock) -> None:
    facade.index(User(id="temp", name="Temporary"), ttl_ms=1000)
    facade.index(User(id="keep", name="Permanent"))
    assert facade.find_by_id("temp") is not None
    clock.now += 2
    assert facade.find_by_id("temp") is None
    assert facade.get_count("user") == 1
    # Next write purges the expired entry for good
    facade.index(User(id="other", name="Other"))
    assert facade.find_query("user", "temporary", Pager()).ids == []


def test_unhydratable_hits_are_dropped(facade: SearchFacade) -> None:
    facade.index(SearchableModel(id="s1", type="user", nickname="ace"))
    facade.index(SearchableModel(id="s2", type="user"))
    result = facade.find_query("user", "*", Pager(), model=StrictProfile)
    assert result.ids == ["s1"]
    assert result.dropped == 1
    assert facade.hydration_failures == 1


def test_default_tenant_must_be_configured(clock: FakeClock) -> None:
    facade = make_facade(clock, default_app_id=None)
    with pytest.raises(ConfigurationError):
        facade.index(User(id="u1", name="Alice"))
    facade.index(User(id="u1", name="Alice"), appid="explicit")
    assert facade.find_by_id("u1", appid="explicit") is not None


def test_file_storage_persists_between_backends(tmp_path: Any, clock: FakeClock) -> None:
    backend = WhooshBackend(str(tmp_path), clock=clock)
    facade = SearchFacade.from_settings(Settings(), backend=backend, clock=clock)
    facade.index(User(id="u1", name="Alice"), appid="acme")
    facade.close()
    reopened = WhooshBackend(str(tmp_path), clock=clock)
    assert reopened.get("tenantsearch-acme", "u1") is not None
    reopened.drop_namespace("tenantsearch-acme")
    assert reopened.get("tenantsearch-acme", "u1") is None


def test_geo_points_from_plain_mappings_are_searchable(facade: SearchFacade) -> None:
    facade.index(SearchableModel.model_validate({"id": "v1", "type": "venue", "latlng": {"lat": 0.001, "lng": 0.0}}))
    facade.index(SearchableModel.model_validate({"id": "v2", "type": "venue", "latlng": {"lat": 0.002, "lon": 0.0}}))
    assert facade.find_nearby("venue", 0.0, 0.0, 10, Pager()).ids == ["v1", "v2"]


def test_hydrated_object_stays_geo_searchable_after_reindex(facade: SearchFacade) -> None:
    facade.index(Venue(id="v1", name="cafe", latlng=GeoPoint(lat=0.001, lng=0.0)))
    found = facade.find_by_id("v1")
    assert found is not None
    assert isinstance(found.model_extra["latlng"], GeoPoint)
    facade.index(found)
    assert facade.find_nearby("venue", 0.0, 0.0, 10, Pager()).ids == ["v1"]
