"""Tenant resolution: app ids to isolated index namespaces.

Namespaces double as Whoosh index names and Elasticsearch index names, so
they must be lowercase and free of path or wildcard characters. App ids are
validated against a small alphabet and then escaped injectively:
``_`` becomes ``__`` and an uppercase letter ``X`` becomes ``_x``. Distinct
app ids therefore never share a namespace even though the result is
lowercase.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from tenantsearch.config import SearchConfig
from tenantsearch.exceptions import ConfigurationError

MAX_APP_ID_LENGTH = 64

_APP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Process-wide tenancy configuration, fixed at startup."""

    default_app_id: Optional[str] = None
    namespace_prefix: str = "tenantsearch"

    @classmethod
    def from_config(cls, cfg: SearchConfig) -> TenantContext:
        return cls(default_app_id=cfg.default_app_id, namespace_prefix=cfg.namespace_prefix)


def encode_app_id(app_id: str) -> str:
    """Escape an app id into a lowercase namespace segment (injective)."""
    if not isinstance(app_id, str) or not app_id:
        raise ConfigurationError("App id must be a non-empty string")
    if len(app_id) > MAX_APP_ID_LENGTH:
        raise ConfigurationError(
            f"App id is longer than {MAX_APP_ID_LENGTH} characters: {app_id[:16]!r}..."
        )
    if not app_id.isascii() or not _APP_ID_RE.match(app_id):
        raise ConfigurationError(
            f"Malformed app id {app_id!r}: use letters, digits, '-' and '_', "
            "starting with a letter or digit"
        )
    out = []
    for ch in app_id:
        if ch == "_":
            out.append("__")
        elif ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out)


class TenantResolver:
    """Maps app ids to namespaces; stateless apart from its immutable context."""

    def __init__(self, context: TenantContext) -> None:
        self._context = context

    @property
    def context(self) -> TenantContext:
        return self._context

    def resolve(self, app_id: Optional[str] = None) -> str:
        """Return the namespace for `app_id`, or for the default tenant when omitted."""
        if app_id is None:
            app_id = self._context.default_app_id
            if not app_id:
                raise ConfigurationError(
                    "No default tenant configured. Set TENANTSEARCH_SEARCH__DEFAULT_APP_ID "
                    "or pass an explicit app id."
                )
        return f"{self._context.namespace_prefix}-{encode_app_id(app_id)}"
