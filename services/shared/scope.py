"""Index partitions.

Every document lives in exactly one scope. Scopes are persisted as plain
string tags (``shared``, ``web``, ``private:<namespace>``) and parsed back
into :class:`Scope` values at the edges.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional


class ScopeKind(str, Enum):
    SHARED = "shared"
    WEB = "web"
    PRIVATE = "private"


@dataclass(frozen=True)
class Scope:
    """A named partition of the index."""
    kind: ScopeKind
    namespace: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.PRIVATE and not self.namespace:
            raise ValueError("private scope requires a namespace")
        if self.kind != ScopeKind.PRIVATE and self.namespace is not None:
            raise ValueError(f"{self.kind.value} scope does not take a namespace")

    @classmethod
    def shared(cls) -> 'Scope':
        return cls(ScopeKind.SHARED)

    @classmethod
    def web(cls) -> 'Scope':
        return cls(ScopeKind.WEB)

    @classmethod
    def private(cls, namespace: str) -> 'Scope':
        return cls(ScopeKind.PRIVATE, namespace)

    @property
    def tag(self) -> str:
        """Storage form of this scope."""
        if self.kind == ScopeKind.PRIVATE:
            return f"{ScopeKind.PRIVATE.value}:{self.namespace}"
        return self.kind.value

    @classmethod
    def parse(cls, tag: str) -> 'Scope':
        """Parse a storage tag. Raises ValueError for unknown tags."""
        if tag == ScopeKind.SHARED.value:
            return cls.shared()
        if tag == ScopeKind.WEB.value:
            return cls.web()
        prefix = f"{ScopeKind.PRIVATE.value}:"
        if tag.startswith(prefix) and len(tag) > len(prefix):
            return cls.private(tag[len(prefix):])
        raise ValueError(f"Unknown scope tag: {tag!r}")

    def __str__(self) -> str:
        return self.tag


def scope_tags(scopes: Iterable[Scope]) -> List[str]:
    """Storage tags for a collection of scopes, order preserved, duplicates dropped."""
    tags: List[str] = []
    for scope in scopes:
        if scope.tag not in tags:
            tags.append(scope.tag)
    return tags
