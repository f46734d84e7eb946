"""
auth/registry.py -- Route -> required permission expression table.

Every guarded route records its expression here at registration time, keyed
by (HTTP method, normalized path pattern). The application freezes the
registry once all routers are included; after that it is read-only and safe
to share between request threads without locking.

Expressions:
  ":"                  public, no authentication required (PUBLIC)
  "resource:action"    subject must hold that permission (or a wildcard)

Path patterns are stored in colon form: "/api/v1/auth/role/:id". FastAPI
"{id}" and "{id:int}" placeholders are converted on the way in.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping

PUBLIC = ":"

_PLACEHOLDER = re.compile(r"^\{([A-Za-z_][A-Za-z0-9_]*)(?::[^}]*)?\}$")


def normalize_path(path: str) -> str:
    """Strip one trailing slash (root excepted) and convert {name} to :name."""
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    segments = []
    for segment in path.split("/"):
        match = _PLACEHOLDER.match(segment)
        segments.append(f":{match.group(1)}" if match else segment)
    return "/".join(segments)


class RouteRegistry:
    """Write-once mapping from (method, path pattern) to permission expression."""

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], str] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, method: str, path: str, expression: str) -> None:
        """Record the expression for a route.

        Re-registering the same expression is a no-op; a different expression
        for an existing key raises ValueError. Raises RuntimeError once frozen.
        """
        if self._frozen:
            raise RuntimeError("RouteRegistry is frozen; routes must be registered before startup")
        key = (method.upper(), normalize_path(path))
        existing = self._routes.get(key)
        if existing is not None and existing != expression:
            raise ValueError(f"{key[0]} {key[1]} already registered as {existing!r}, not {expression!r}")
        self._routes[key] = expression

    def freeze(self) -> None:
        self._frozen = True

    def lookup(self, method: str, path: str, path_params: Mapping[str, object] | None = None) -> str | None:
        """Return the expression for a concrete request path, or None.

        Each path parameter value is swapped back to its :name placeholder,
        segment-wise, at the leftmost segment not already replaced. Values are
        compared as strings since that is how they appear in the URL.
        """
        segments = normalize_path(path).split("/")
        replaced = [False] * len(segments)
        for name, value in (path_params or {}).items():
            text = str(value)
            for index, segment in enumerate(segments):
                if not replaced[index] and segment == text:
                    segments[index] = f":{name}"
                    replaced[index] = True
                    break
        return self._routes.get((method.upper(), "/".join(segments)))

    def items(self) -> Iterator[tuple[tuple[str, str], str]]:
        return iter(sorted(self._routes.items()))

    def __contains__(self, key: object) -> bool:
        return key in self._routes

    def __len__(self) -> int:
        return len(self._routes)
