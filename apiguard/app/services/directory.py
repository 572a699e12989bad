"""In-memory directory of users, content and permissions.

This is the data source ``CachedQueries`` reads through the cache. It keeps
the query semantics the admin backend relies on (filtering, search, sorting,
pagination, role and per-user permission grants) without a database.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from apiguard.app.core.clock import Clock, system_clock

USER_ROLES = ("USER", "ADMIN", "SUPER_ADMIN")
CONTENT_TYPES = ("NEWS", "CASE_STUDY", "SERVICE", "PAGE")
CONTENT_STATUSES = ("DRAFT", "PUBLISHED", "ARCHIVED")

PERMISSIONS: Dict[str, str] = {
    "content:read": "View content",
    "content:write": "Create and edit content",
    "content:delete": "Delete content",
    "content:publish": "Publish content",
    "users:read": "View users",
    "users:write": "Create and edit users",
    "users:delete": "Delete users",
    "users:manage_permissions": "Manage user permissions",
    "files:read": "View files",
    "files:upload": "Upload files",
    "files:delete": "Delete files",
    "files:manage": "Manage all files",
    "forms:read": "View form submissions",
    "forms:export": "Export form data",
    "forms:delete": "Delete form data",
    "system:settings": "Change system settings",
    "system:logs": "View system logs",
    "system:health": "View system health",
    "system:maintenance": "Run maintenance operations",
    "analytics:read": "View analytics",
    "analytics:export": "Export analytics",
}

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "USER": ["content:read", "files:read", "files:upload"],
    "ADMIN": [
        "content:read",
        "content:write",
        "content:publish",
        "users:read",
        "files:read",
        "files:upload",
        "files:delete",
        "forms:read",
        "forms:export",
        "analytics:read",
    ],
    "SUPER_ADMIN": list(PERMISSIONS),
}


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str = "USER"
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Content:
    id: str
    title: str
    body: str
    author_id: str
    type: str = "NEWS"
    status: str = "DRAFT"
    excerpt: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class PermissionGrant:
    """Per-user override of a role permission."""

    permission: str
    granted: bool
    reason: Optional[str] = None
    expires_at: Optional[float] = None


@dataclass
class _Page:
    items: List[Dict[str, Any]]
    page: int
    limit: int
    total: int

    def pagination(self) -> Dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": math.ceil(self.total / self.limit) if self.limit else 0,
        }


def _paginate(
    items: List[Any], page: int, limit: int, sort_by: str, sort_order: str
) -> _Page:
    page = max(1, int(page))
    limit = max(1, int(limit))
    items = sorted(items, key=lambda item: getattr(item, sort_by), reverse=sort_order == "desc")
    start = (page - 1) * limit
    return _Page(
        items=[asdict(item) for item in items[start:start + limit]],
        page=page,
        limit=limit,
        total=len(items),
    )


class Directory:
    """Users, content and permission grants held in process memory.

    Usage:
        directory = Directory.with_sample_data()
        page = await directory.list_users(role="ADMIN")
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        self.users: Dict[str, User] = {}
        self.contents: Dict[str, Content] = {}
        self.role_permissions: Dict[str, List[str]] = {
            role: list(names) for role, names in ROLE_PERMISSIONS.items()
        }
        self.user_grants: Dict[str, Dict[str, PermissionGrant]] = {}

    @classmethod
    def with_sample_data(cls, clock: Clock = system_clock) -> "Directory":
        """Directory seeded with a handful of users and published content."""
        directory = cls(clock=clock)
        now = clock()
        directory.add_user(User("u-1", "Ada Admin", "ada@example.com", "SUPER_ADMIN", now, now))
        directory.add_user(User("u-2", "Ben Editor", "ben@example.com", "ADMIN", now + 1, now + 1))
        directory.add_user(User("u-3", "Cleo Reader", "cleo@example.com", "USER", now + 2, now + 2))
        for i in range(1, 6):
            directory.add_content(
                Content(
                    id=f"c-{i}",
                    title=f"Release notes {i}",
                    body=f"Changes shipped in release {i}.",
                    author_id="u-2",
                    type="NEWS",
                    status="PUBLISHED" if i % 2 else "DRAFT",
                    excerpt=f"Release {i}",
                    created_at=now + i,
                    updated_at=now + i,
                )
            )
        return directory

    # -- writes --

    def add_user(self, user: User) -> User:
        if user.role not in USER_ROLES:
            raise ValueError(f"Unknown role: {user.role}")
        self.users[user.id] = user
        return user

    def add_content(self, content: Content) -> Content:
        self.contents[content.id] = content
        return content

    def set_user_permission(
        self,
        user_id: str,
        permission: str,
        granted: bool,
        reason: Optional[str] = None,
        expires_at: Optional[float] = None,
    ) -> PermissionGrant:
        """Grant or revoke one permission for one user, overriding the role."""
        if user_id not in self.users:
            raise KeyError(f"User not found: {user_id}")
        if permission not in PERMISSIONS:
            raise KeyError(f"Permission not found: {permission}")
        grant = PermissionGrant(permission, granted, reason, expires_at)
        self.user_grants.setdefault(user_id, {})[permission] = grant
        return grant

    # -- queries --

    async def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    async def list_users(
        self,
        page: int = 1,
        limit: int = 20,
        role: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        users = list(self.users.values())
        if role in USER_ROLES:
            users = [u for u in users if u.role == role]
        if search:
            needle = search.lower()
            users = [u for u in users if needle in u.name.lower() or needle in u.email.lower()]
        result = _paginate(users, page, limit, sort_by, sort_order)
        return {"users": result.items, "pagination": result.pagination()}

    async def list_contents(
        self,
        page: int = 1,
        limit: int = 20,
        type: Optional[str] = None,
        status: Optional[str] = None,
        author_id: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        contents = list(self.contents.values())
        if type in CONTENT_TYPES:
            contents = [c for c in contents if c.type == type]
        if status in CONTENT_STATUSES:
            contents = [c for c in contents if c.status == status]
        if author_id:
            contents = [c for c in contents if c.author_id == author_id]
        if search:
            needle = search.lower()
            contents = [
                c for c in contents
                if needle in c.title.lower()
                or needle in c.body.lower()
                or needle in c.excerpt.lower()
            ]
        result = _paginate(contents, page, limit, sort_by, sort_order)
        return {"contents": result.items, "pagination": result.pagination()}

    async def get_role_permissions(self, role: str) -> List[Dict[str, Any]]:
        return [
            {"name": name, "description": PERMISSIONS.get(name, ""), "granted": True}
            for name in self.role_permissions.get(role, [])
        ]

    async def get_user_grants(self, user_id: str) -> List[PermissionGrant]:
        """Live per-user overrides; expired grants are left out."""
        now = self._clock()
        return [
            grant for grant in self.user_grants.get(user_id, {}).values()
            if grant.expires_at is None or grant.expires_at > now
        ]
