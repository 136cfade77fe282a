"""
Filter builder for store queries and deletes.

Every filtered call (scroll, count, delete, search) builds its filter
here, so the wire shape lives in one place:

    Filter(must=[match("role", "user")], must_not=[match("role", "project")])

serializes to

    {"must": [{"key": "role", "match": {"value": "user"}}],
     "must_not": [{"key": "role", "match": {"value": "project"}}]}
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class Condition:
    """A single field condition: exact match, match-any, or numeric range."""
    key: str
    value: Optional[Scalar] = None
    any_of: Optional[tuple] = None
    gte: Optional[float] = None
    lte: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        if self.any_of is not None:
            return {"key": self.key, "match": {"any": list(self.any_of)}}
        if self.gte is not None or self.lte is not None:
            bounds = {}
            if self.gte is not None:
                bounds["gte"] = self.gte
            if self.lte is not None:
                bounds["lte"] = self.lte
            return {"key": self.key, "range": bounds}
        return {"key": self.key, "match": {"value": self.value}}

    def matches(self, payload: dict) -> bool:
        """Evaluate against a payload the way the store does.

        A list-valued field matches if any element matches.
        """
        actual = payload.get(self.key)
        values = actual if isinstance(actual, list) else [actual]
        if self.any_of is not None:
            return any(v in self.any_of for v in values)
        if self.gte is not None or self.lte is not None:
            for v in values:
                if not isinstance(v, (int, float)) or isinstance(v, bool):
                    continue
                if self.gte is not None and v < self.gte:
                    continue
                if self.lte is not None and v > self.lte:
                    continue
                return True
            return False
        return self.value in values


def match(key: str, value: Scalar) -> Condition:
    return Condition(key=key, value=value)


def match_any(key: str, values) -> Condition:
    return Condition(key=key, any_of=tuple(values))


def range_(key: str, gte: Optional[float] = None, lte: Optional[float] = None) -> Condition:
    if gte is None and lte is None:
        raise ValueError("range needs at least one bound")
    return Condition(key=key, gte=gte, lte=lte)


@dataclass(frozen=True, init=False)
class Filter:
    """Conjunction of ``must`` conditions with ``must_not`` exclusions."""
    must: tuple
    must_not: tuple

    def __init__(self, must=(), must_not=()):
        object.__setattr__(self, "must", tuple(must))
        object.__setattr__(self, "must_not", tuple(must_not))

    def and_(self, *conditions: Condition) -> "Filter":
        return Filter(must=self.must + conditions, must_not=self.must_not)

    def excluding(self, *conditions: Condition) -> "Filter":
        return Filter(must=self.must, must_not=self.must_not + conditions)

    def is_empty(self) -> bool:
        return not self.must and not self.must_not

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.must:
            d["must"] = [c.to_dict() for c in self.must]
        if self.must_not:
            d["must_not"] = [c.to_dict() for c in self.must_not]
        return d

    def matches(self, payload: dict) -> bool:
        return (all(c.matches(payload) for c in self.must)
                and not any(c.matches(payload) for c in self.must_not))


# ---------------------------------------------------------------------------
# Common filters
# ---------------------------------------------------------------------------

EVERYTHING = Filter()


def conversation_only(*must: Condition) -> Filter:
    """Messages of any role except ``project``."""
    return Filter(must=must, must_not=[match("role", "project")])


def project_files(project: Optional[str] = None, *must: Condition) -> Filter:
    """Records in the project collection, optionally scoped to one root."""
    conditions = [match("type", "project_file")]
    if project:
        conditions.append(match("project", project))
    conditions.extend(must)
    return Filter(must=conditions)
