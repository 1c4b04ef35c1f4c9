import pytest

from tenantsearch.config import SearchConfig
from tenantsearch.exceptions import ConfigurationError
from tenantsearch.tenancy import TenantContext, TenantResolver, encode_app_id


def test_resolve_uses_prefix_and_app_id() -> None:
    resolver = TenantResolver(TenantContext(default_app_id="shop", namespace_prefix="ts"))
    assert resolver.resolve("blog") == "ts-blog"
    assert resolver.resolve() == "ts-shop"


def test_resolve_without_default_tenant_fails() -> None:
    resolver = TenantResolver(TenantContext())
    with pytest.raises(ConfigurationError):
        resolver.resolve()
    assert resolver.resolve("explicit").endswith("-explicit")


def test_encoding_is_lowercase_and_injective() -> None:
    ids = ["App", "app", "a_pp", "a__pp", "A_pp", "a-pp", "app_"]
    encoded = [encode_app_id(i) for i in ids]
    assert all(e == e.lower() for e in encoded)
    assert len(set(encoded)) == len(ids)
    assert encode_app_id("MyApp_1") == "_my_app__1"


@pytest.mark.parametrize("bad", ["", "-lead", "_app", "has space", "a/b", "a*", "ünï", "x" * 65])
def test_malformed_app_ids_are_rejected(bad: str) -> None:
    with pytest.raises(ConfigurationError):
        encode_app_id(bad)


def test_context_from_config() -> None:
    cfg = SearchConfig(default_app_id="acme", namespace_prefix="search")
    context = TenantContext.from_config(cfg)
    assert TenantResolver(context).resolve() == "search-acme"
