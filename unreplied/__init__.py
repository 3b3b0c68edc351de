from __future__ import annotations

from unreplied.coordinator import (
    PaginationCoordinator,
    TreeCache,
    UnrepliedService,
    fetch_unreplied_page,
)
from unreplied.exceptions import (
    APISchemaError,
    InvalidInputError,
    MisconfigurationError,
    NotFoundError,
    RateLimitError,
    UnrepliedException,
    UpstreamUnavailableError,
)
from unreplied.projector import flatten_replies, time_ago
from unreplied.resolver import has_author_reply, resolve_unreplied
from unreplied.structures import (
    Author,
    Cast,
    CastRef,
    ConversationTree,
    ListingPage,
    PageResult,
    PageState,
    ReplyNode,
    UnrepliedDetail,
)
from unreplied.walker import TreeWalker

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # exceptions
    "UnrepliedException",
    "InvalidInputError",
    "NotFoundError",
    "UpstreamUnavailableError",
    "RateLimitError",
    "MisconfigurationError",
    "APISchemaError",
    # structures
    "Author",
    "Cast",
    "CastRef",
    "ReplyNode",
    "ConversationTree",
    "UnrepliedDetail",
    "ListingPage",
    "PageResult",
    "PageState",
    # core
    "TreeWalker",
    "has_author_reply",
    "resolve_unreplied",
    "flatten_replies",
    "time_ago",
    # orchestration
    "TreeCache",
    "UnrepliedService",
    "PaginationCoordinator",
    "fetch_unreplied_page",
]
