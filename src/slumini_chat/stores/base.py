"""Document store interface."""

import operator
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

_MISSING = object()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class StoreError(Exception):
    """Base class for document store failures."""


class AlreadyExists(StoreError):
    """Raised by create() when the document is already present."""


class NotFound(StoreError):
    """Raised by update() when the document is missing."""


class FailedPrecondition(StoreError):
    """Raised by update() when the document changed since ``last_update_time``."""


class ServerTimestamp:
    """Placeholder resolved to the store's clock at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    """Atomic numeric increment of a field."""

    amount: int = 1


def get_field(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted field path such as ``unread_count.student``."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


@dataclass(frozen=True)
class FieldFilter:
    """Equality/comparison filter on a (dotted) field."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")

    def matches(self, data: Dict[str, Any]) -> bool:
        current = get_field(data, self.field, _MISSING)
        if current is _MISSING:
            return False
        try:
            return _OPERATORS[self.op](current, self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass
class Document:
    """Snapshot of a stored document."""

    id: str
    path: str
    data: Dict[str, Any] = field(default_factory=dict)
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    sequence: int = 0

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0]


class Subscription(ABC):
    """Handle for a live listener."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether updates are still being delivered."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivering updates. Safe to call more than once."""


SnapshotCallback = Callable[[List[Document]], None]
ErrorCallback = Callable[[Exception], None]


class DocumentStore(ABC):
    """Abstract base class for document stores.

    Paths alternate collection and document ids, e.g.
    ``conversations/{id}/messages/{message_id}``.
    """

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        """Retrieve a document, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(self, path: str, data: Dict[str, Any]) -> Document:
        """Create a document, raising AlreadyExists if it is present."""
        pass

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any]) -> Document:
        """Create or overwrite a document."""
        pass

    @abstractmethod
    async def update(
        self, path: str, changes: Dict[str, Any], last_update_time: Optional[datetime] = None
    ) -> Document:
        """Apply field changes (dotted paths allowed), raising NotFound if absent.

        With ``last_update_time`` the write only happens if the document was
        not modified since then; otherwise FailedPrecondition is raised.
        """
        pass

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> Document:
        """Create a document with a generated id."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document if it exists."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Sequence[FieldFilter] = (),
        order_by: Sequence[OrderBy] = (),
    ) -> List[Document]:
        """Return matching documents of one collection."""
        pass

    @abstractmethod
    async def list_collections(self, prefix: str = "") -> List[str]:
        """Return paths of non-empty collections starting with ``prefix``."""
        pass

    @abstractmethod
    async def watch(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        where: Sequence[FieldFilter] = (),
        order_by: Sequence[OrderBy] = (),
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Deliver the full query result now and after every change."""
        pass
