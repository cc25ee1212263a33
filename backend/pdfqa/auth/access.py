"""
Document Access Resolver

Access hierarchy (highest → lowest privilege):
    owner > write > read > none

Resolution order for a (document, user) pair, first match wins:
    1. user is the document owner      → owner
    2. document.is_public              → read
    3. user holds a grant              → the grant's permission
    4. otherwise                       → none

resolve()/has_access()/require() are pure and run on every read and query
path. share()/unshare()/set_public() are the only mutations of the grant
mapping; they go through DocumentRegistry.update_access(), which rejects
the write if the document changed since the caller loaded it.

Usage:
    resolver = AccessResolver(registry)
    resolver.require(document, user_id, AccessLevel.WRITE)   # raises 403
    await resolver.share(document, "user-2", GrantPermission.READ)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pdfqa.core.errors import ForbiddenError, GrantNotFoundError, ValidationError
from pdfqa.models.documents import Document, DocumentGrant
from pdfqa.schemas.documents import AccessLevel, GrantPermission
from pdfqa.services.registry import DocumentRegistry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Level ordering: higher value = more privilege
# ---------------------------------------------------------------------------

_LEVEL_ORDER: dict[AccessLevel, int] = {
    AccessLevel.NONE:  0,
    AccessLevel.READ:  1,
    AccessLevel.WRITE: 2,
    AccessLevel.OWNER: 3,
}


def _meets(level: AccessLevel, minimum: AccessLevel) -> bool:
    """Return True if `level` meets or exceeds `minimum`."""
    return _LEVEL_ORDER[level] >= _LEVEL_ORDER[minimum]


def resolve(document: Document, user_id: str) -> AccessLevel:
    if user_id and user_id == document.owner_id:
        return AccessLevel.OWNER
    if document.is_public:
        return AccessLevel.READ
    grant = document.grants.get(user_id)
    if grant is not None:
        return AccessLevel(grant.permission)
    return AccessLevel.NONE


def has_access(document: Document, user_id: str) -> bool:
    return resolve(document, user_id) is not AccessLevel.NONE


def _require_grant(document: Document, user_id: str) -> None:
    if not document.grants:
        raise GrantNotFoundError("document is not shared with any users")
    if user_id not in document.grants:
        raise GrantNotFoundError("document is not shared with this user")


# ---------------------------------------------------------------------------
# Resolver with persistence for the mutating operations
# ---------------------------------------------------------------------------

class AccessResolver:

    def __init__(self, registry: DocumentRegistry) -> None:
        self._registry = registry

    resolve    = staticmethod(resolve)
    has_access = staticmethod(has_access)

    @staticmethod
    def require(document: Document, user_id: str, minimum: AccessLevel) -> AccessLevel:
        """Return the caller's level, or raise ForbiddenError if below `minimum`."""
        level = resolve(document, user_id)
        if not _meets(level, minimum):
            logger.info(
                "Access denied | doc=%s user=%s level=%s required=%s",
                document.uuid, user_id, level.value, minimum.value,
            )
            raise ForbiddenError(
                f"Insufficient permissions on document '{document.uuid}'. "
                f"Required: '{minimum.value}', yours: '{level.value}'.",
                details={"required": minimum.value, "actual": level.value},
            )
        return level

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def share(
        self,
        document:       Document,
        target_user_id: str,
        permission:     GrantPermission | str,
        *,
        acting_user_id: str | None = None,
    ) -> Document:
        """
        Grant `permission` to `target_user_id`, or update the existing grant
        in place (permission + shared_at). Never creates a second grant.
        """
        target_user_id = (target_user_id or "").strip()
        if not target_user_id:
            raise ValidationError("target user id is required.", field="user_id")
        if target_user_id == document.owner_id:
            raise ValidationError("cannot share with owner", field="user_id")
        try:
            permission = GrantPermission(permission)
        except ValueError:
            raise ValidationError(
                f"permission must be one of: {', '.join(p.value for p in GrantPermission)}.",
                field="permission",
            ) from None

        def _apply(doc: Document) -> None:
            now = datetime.now(timezone.utc)
            grant = doc.grants.get(target_user_id)
            if grant is not None:
                grant.permission = permission.value
                grant.shared_at  = now
            else:
                doc.grants[target_user_id] = DocumentGrant(
                    user_id=target_user_id,
                    permission=permission.value,
                    shared_at=now,
                )

        return await self._registry.update_access(
            document.uuid,
            _apply,
            expected_version=document.version,
            action="document.shared",
            user_id=acting_user_id,
            payload={"target_user_id": target_user_id, "permission": permission.value},
        )

    async def unshare(
        self,
        document:       Document,
        target_user_id: str,
        *,
        acting_user_id: str | None = None,
    ) -> Document:
        """Remove the single grant held by `target_user_id`."""

        def _apply(doc: Document) -> None:
            _require_grant(doc, target_user_id)
            del doc.grants[target_user_id]

        # Fail fast on the caller's snapshot; _apply re-checks on fresh state.
        _require_grant(document, target_user_id)

        return await self._registry.update_access(
            document.uuid,
            _apply,
            expected_version=document.version,
            action="document.unshared",
            user_id=acting_user_id,
            payload={"target_user_id": target_user_id},
        )

    async def set_public(
        self,
        document:       Document,
        is_public:      bool,
        *,
        acting_user_id: str | None = None,
    ) -> Document:

        def _apply(doc: Document) -> None:
            doc.is_public = is_public

        return await self._registry.update_access(
            document.uuid,
            _apply,
            expected_version=document.version,
            action="document.visibility_changed",
            user_id=acting_user_id,
            payload={"is_public": is_public},
        )
