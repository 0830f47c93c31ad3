"""Local projections of remote collections."""

from .feed import FeedItem, FeedProjector, PostStat, author_profile_enricher
from .role import RoleProjection, RoleProjector, project_role

__all__ = [
    "FeedItem",
    "FeedProjector",
    "PostStat",
    "RoleProjection",
    "RoleProjector",
    "author_profile_enricher",
    "project_role",
]
