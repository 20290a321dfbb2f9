"""
Request/response boundary between the command layer and the member core.

Callers build one of the request dataclasses below and pass it to
``MemberRegistry.handle``, which always returns a ``Result``: either ``ok``
(a record, a list of records, PNG bytes or ``True``) or an ``ErrorKind`` with
a human-readable message. No exception escapes ``handle``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from audit_log import AuditChannel
from card_renderer import CardRenderer
from member_store import MemberStore
from members import (
    AuthorizationError,
    ErrorKind,
    MemberStatus,
    MembershipError,
    require_text,
)

logger = logging.getLogger(__name__)

AvatarFetcher = Callable[[], Awaitable[bytes]]


@dataclass(frozen=True)
class RegisterRequest:
    requester_is_admin: bool
    name: str
    role: str
    owner_ref: Optional[str] = None


@dataclass(frozen=True)
class LookupRequest:
    member_id: str


@dataclass(frozen=True)
class RenderCardRequest:
    member_id: str
    avatar_fetcher: Optional[AvatarFetcher] = None


@dataclass(frozen=True)
class UpdateStatusRequest:
    requester_is_admin: bool
    member_id: str
    status: str


@dataclass(frozen=True)
class UpdateRoleRequest:
    requester_is_admin: bool
    member_id: str
    role: str


@dataclass(frozen=True)
class DeleteRequest:
    requester_is_admin: bool
    member_id: str


@dataclass(frozen=True)
class ListRequest:
    requester_is_admin: bool


@dataclass(frozen=True)
class Result:
    ok: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "Result":
        return cls(ok=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result":
        return cls(error=kind, message=message)


def _not_found(member_id: str) -> Result:
    return Result.failure(ErrorKind.NOT_FOUND, f"No member with ID {member_id}.")


class MemberRegistry:
    def __init__(
        self,
        store: MemberStore,
        renderer: Optional[CardRenderer] = None,
        audit: Optional[AuditChannel] = None,
        avatar_timeout: float = 5.0,
    ):
        self.store = store
        self.renderer = renderer or CardRenderer()
        self.audit = audit or AuditChannel()
        self.avatar_timeout = avatar_timeout
        self._handlers = {
            RegisterRequest: self._register,
            LookupRequest: self._lookup,
            RenderCardRequest: self._render_card,
            UpdateStatusRequest: self._update_status,
            UpdateRoleRequest: self._update_role,
            DeleteRequest: self._delete,
            ListRequest: self._list,
        }

    async def handle(self, request) -> Result:
        handler = self._handlers.get(type(request))
        if handler is None:
            return Result.failure(ErrorKind.VALIDATION, f"Unsupported request: {type(request).__name__}.")

        try:
            return await handler(request)
        except MembershipError as e:
            if e.kind is ErrorKind.STORE_UNAVAILABLE:
                logger.error(f"{type(request).__name__} failed, store unavailable: {e}")
            else:
                logger.info(f"{type(request).__name__} rejected ({e.kind.value}): {e}")
            return Result.failure(e.kind, str(e))
        except Exception:
            logger.exception(f"Unexpected error while handling {type(request).__name__}")
            return Result.failure(ErrorKind.INTERNAL, "An internal error occurred. Please try again later.")

    @staticmethod
    def _require_admin(request) -> None:
        if not request.requester_is_admin:
            raise AuthorizationError("Admin only.")

    async def _register(self, request: RegisterRequest) -> Result:
        self._require_admin(request)
        name = require_text(request.name, "Name")
        role = require_text(request.role, "Role")

        record = await self.store.create(name, role, owner_ref=request.owner_ref)
        self.audit.notify(f"Registered {record.name} ({record.id})")
        return Result.success(record)

    async def _lookup(self, request: LookupRequest) -> Result:
        member_id = require_text(request.member_id, "Member ID")
        record = await self.store.get_by_id(member_id)
        if record is None:
            return _not_found(member_id)
        return Result.success(record)

    async def _render_card(self, request: RenderCardRequest) -> Result:
        member_id = require_text(request.member_id, "Member ID")
        record = await self.store.get_by_id(member_id)
        if record is None:
            return _not_found(member_id)

        avatar = await self._fetch_avatar(request.avatar_fetcher)
        png = await asyncio.to_thread(self.renderer.render, record, avatar)
        return Result.success(png)

    async def _fetch_avatar(self, fetcher: Optional[AvatarFetcher]) -> Optional[bytes]:
        if fetcher is None:
            return None
        try:
            data = await asyncio.wait_for(fetcher(), timeout=self.avatar_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Avatar fetch timed out after {self.avatar_timeout}s, rendering without avatar")
            return None
        except Exception as e:
            logger.warning(f"Avatar fetch failed ({type(e).__name__}: {e}), rendering without avatar")
            return None
        return data or None

    async def _update_status(self, request: UpdateStatusRequest) -> Result:
        self._require_admin(request)
        member_id = require_text(request.member_id, "Member ID")
        status = MemberStatus.parse(request.status)

        if not await self.store.update_status(member_id, status):
            return _not_found(member_id)
        self.audit.notify(f"Status updated: {member_id} → {status.value}")
        return Result.success(True)

    async def _update_role(self, request: UpdateRoleRequest) -> Result:
        self._require_admin(request)
        member_id = require_text(request.member_id, "Member ID")
        role = require_text(request.role, "Role")

        if not await self.store.update_role(member_id, role):
            return _not_found(member_id)
        self.audit.notify(f"Role updated: {member_id} → {role}")
        return Result.success(True)

    async def _delete(self, request: DeleteRequest) -> Result:
        self._require_admin(request)
        member_id = require_text(request.member_id, "Member ID")

        if not await self.store.delete(member_id):
            return _not_found(member_id)
        self.audit.notify(f"Deleted member {member_id}")
        return Result.success(True)

    async def _list(self, request: ListRequest) -> Result:
        self._require_admin(request)
        return Result.success(await self.store.list_all())
