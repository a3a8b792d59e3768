from __future__ import annotations

from typing import Any

from productive_resolve.models import ResourceType


class ResolveError(Exception):
    code = "resolve_error"

    def __init__(self, message: str, *, query: str, type: ResourceType | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.query = query
        self.type = type

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "query": self.query, "type": self.type}


class NotFoundError(ResolveError):
    code = "not_found"

    def __init__(self, *, query: str, type: ResourceType) -> None:
        super().__init__(f'No {type} found matching "{query}"', query=query, type=type)


class AmbiguousTypeError(ResolveError):
    code = "ambiguous_type"

    def __init__(self, *, query: str) -> None:
        super().__init__(f'Cannot determine resource type for "{query}". Specify a type.', query=query)
