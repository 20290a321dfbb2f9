import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from audit_log import AuditChannel
from conftest import FIXED_NOW, sequence_ids
from member_store import MemberStore, MemoryMemberStore
from members import ErrorKind, MemberStatus, RenderError, StoreUnavailableError, make_internal_id
from registry import (
    DeleteRequest,
    ListRequest,
    LookupRequest,
    MemberRegistry,
    RegisterRequest,
    RenderCardRequest,
    Result,
    UpdateRoleRequest,
    UpdateStatusRequest,
)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _registry(*ids, audit=None, **kwargs):
    store = MemoryMemberStore(id_factory=sequence_ids(*ids) if ids else lambda: "482913", clock=lambda: FIXED_NOW)
    return MemberRegistry(store, audit=audit, **kwargs), store


def _mock_store():
    store = MagicMock(spec=MemberStore)
    for name in ("create", "get_by_id", "get_by_owner", "update_status", "update_role", "delete", "list_all"):
        setattr(store, name, AsyncMock())
    return store


@pytest.mark.asyncio
class TestMembershipScenario:

    async def test_register_lookup_update_delete(self):
        registry, _ = _registry()

        registered = await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))
        assert registered.is_ok
        record = registered.ok
        assert record.id == "482913"
        assert record.name == "Asha Rao"
        assert record.role == "Volunteer"
        assert record.status is MemberStatus.ACTIVE
        assert record.issued_on == FIXED_NOW.strftime("%Y-%m-%d")
        assert record.internal_id == make_internal_id(FIXED_NOW)
        assert record.internal_id.startswith("UOI-")

        looked_up = await registry.handle(LookupRequest(member_id="482913"))
        assert looked_up.ok == record

        updated = await registry.handle(UpdateRoleRequest(requester_is_admin=True, member_id="482913", role="Coordinator"))
        assert updated == Result.success(True)
        assert (await registry.handle(LookupRequest(member_id="482913"))).ok == record.with_changes(role="Coordinator")

        deleted = await registry.handle(DeleteRequest(requester_is_admin=True, member_id="482913"))
        assert deleted.is_ok

        gone = await registry.handle(LookupRequest(member_id="482913"))
        assert gone.error is ErrorKind.NOT_FOUND
        assert gone.ok is None

    async def test_status_update_is_case_insensitive(self):
        registry, store = _registry()
        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))

        result = await registry.handle(UpdateStatusRequest(requester_is_admin=True, member_id="482913", status="suspended"))

        assert result.is_ok
        assert (await store.get_by_id("482913")).status is MemberStatus.SUSPENDED

    async def test_invalid_status_is_validation_error(self):
        registry, store = _registry()
        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))

        result = await registry.handle(UpdateStatusRequest(requester_is_admin=True, member_id="482913", status="retired"))

        assert result.error is ErrorKind.VALIDATION
        assert (await store.get_by_id("482913")).status is MemberStatus.ACTIVE

    async def test_missing_name_is_validation_error(self):
        registry, store = _registry()

        result = await registry.handle(RegisterRequest(requester_is_admin=True, name="  ", role="Volunteer"))

        assert result.error is ErrorKind.VALIDATION
        assert await store.list_all() == []

    @pytest.mark.parametrize("request_obj", [
        UpdateStatusRequest(requester_is_admin=True, member_id="999999", status="REVOKED"),
        UpdateRoleRequest(requester_is_admin=True, member_id="999999", role="Coordinator"),
        DeleteRequest(requester_is_admin=True, member_id="999999"),
        LookupRequest(member_id="999999"),
        RenderCardRequest(member_id="999999"),
    ])
    async def test_missing_member_is_not_found_result(self, request_obj):
        registry, store = _registry()

        result = await registry.handle(request_obj)

        assert result.error is ErrorKind.NOT_FOUND
        assert "999999" in result.message
        assert await store.list_all() == []

    async def test_list_empty_and_populated(self):
        registry, _ = _registry("111111", "222222")

        empty = await registry.handle(ListRequest(requester_is_admin=True))
        assert empty == Result.success([])

        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))
        await registry.handle(RegisterRequest(requester_is_admin=True, name="Ravi Menon", role="Treasurer"))

        listed = await registry.handle(ListRequest(requester_is_admin=True))
        assert sorted(r.id for r in listed.ok) == ["111111", "222222"]

    async def test_owner_bound_registration(self):
        registry, store = _registry("111111", "222222")

        first = await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer", owner_ref="42"))
        second = await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Coordinator", owner_ref="42"))

        assert second.ok.id == first.ok.id
        assert second.ok.role == "Coordinator"
        assert len(await store.list_all()) == 1


@pytest.mark.asyncio
class TestAuthorization:

    async def test_non_admin_register_creates_nothing(self):
        registry, store = _registry()

        result = await registry.handle(RegisterRequest(requester_is_admin=False, name="Asha Rao", role="Volunteer"))

        assert result.error is ErrorKind.AUTHORIZATION
        assert await store.list_all() == []

    @pytest.mark.parametrize("request_obj", [
        RegisterRequest(requester_is_admin=False, name="Asha Rao", role="Volunteer"),
        UpdateStatusRequest(requester_is_admin=False, member_id="482913", status="REVOKED"),
        UpdateRoleRequest(requester_is_admin=False, member_id="482913", role="Coordinator"),
        DeleteRequest(requester_is_admin=False, member_id="482913"),
        ListRequest(requester_is_admin=False),
    ])
    async def test_gate_runs_before_store_access(self, request_obj):
        store = _mock_store()
        registry = MemberRegistry(store)

        result = await registry.handle(request_obj)

        assert result.error is ErrorKind.AUTHORIZATION
        assert store.method_calls == []
        for name in ("create", "get_by_id", "update_status", "update_role", "delete", "list_all"):
            getattr(store, name).assert_not_awaited()

    async def test_public_requests_need_no_admin(self):
        registry, _ = _registry()
        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))

        assert (await registry.handle(LookupRequest(member_id="482913"))).is_ok
        assert (await registry.handle(RenderCardRequest(member_id="482913"))).is_ok


@pytest.mark.asyncio
class TestCardRendering:

    async def _registered(self, **kwargs):
        registry, _ = _registry(**kwargs)
        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))
        return registry

    async def test_card_without_avatar(self):
        registry = await self._registered()

        result = await registry.handle(RenderCardRequest(member_id="482913"))

        assert result.is_ok
        assert result.ok.startswith(PNG_SIGNATURE)

    async def test_failing_avatar_fetch_still_renders(self):
        registry = await self._registered()
        fetcher = AsyncMock(side_effect=aiohttp.ClientError("cdn down"))

        result = await registry.handle(RenderCardRequest(member_id="482913", avatar_fetcher=fetcher))

        assert result.is_ok
        assert result.ok.startswith(PNG_SIGNATURE)
        fetcher.assert_awaited_once()

    async def test_slow_avatar_fetch_times_out(self):
        registry = await self._registered(avatar_timeout=0.05)

        async def slow_fetch():
            await asyncio.sleep(5)
            return b""

        result = await registry.handle(RenderCardRequest(member_id="482913", avatar_fetcher=slow_fetch))

        assert result.is_ok
        assert result.ok.startswith(PNG_SIGNATURE)

    async def test_corrupt_avatar_bytes_still_render(self):
        registry = await self._registered()
        fetcher = AsyncMock(return_value=b"\x00\x01garbage")

        result = await registry.handle(RenderCardRequest(member_id="482913", avatar_fetcher=fetcher))

        assert result.is_ok

    async def test_render_failure_maps_to_render_error(self):
        registry = await self._registered()
        registry.renderer = MagicMock()
        registry.renderer.render.side_effect = RenderError("template broken")

        result = await registry.handle(RenderCardRequest(member_id="482913"))

        assert result.error is ErrorKind.RENDER
        assert result.message == "template broken"


@pytest.mark.asyncio
class TestRequestBoundary:

    async def test_store_unavailable_is_surfaced(self):
        store = _mock_store()
        store.get_by_id.side_effect = StoreUnavailableError("database is down")
        registry = MemberRegistry(store)

        result = await registry.handle(LookupRequest(member_id="482913"))

        assert result == Result.failure(ErrorKind.STORE_UNAVAILABLE, "database is down")

    async def test_unexpected_error_becomes_internal(self):
        store = _mock_store()
        store.list_all.side_effect = RuntimeError("boom")
        registry = MemberRegistry(store)

        result = await registry.handle(ListRequest(requester_is_admin=True))

        assert result.error is ErrorKind.INTERNAL
        assert "boom" not in result.message

    async def test_unknown_request_type(self):
        registry, _ = _registry()

        result = await registry.handle(object())

        assert result.error is ErrorKind.VALIDATION

    async def test_empty_member_id_is_validation_error(self):
        registry, _ = _registry()

        result = await registry.handle(LookupRequest(member_id=" "))

        assert result.error is ErrorKind.VALIDATION


@pytest.mark.asyncio
class TestAuditNotifications:

    async def test_mutations_emit_summaries(self):
        sink = AsyncMock()
        audit = AuditChannel(sink)
        registry, _ = _registry(audit=audit)

        await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))
        await registry.handle(UpdateStatusRequest(requester_is_admin=True, member_id="482913", status="revoked"))
        await registry.handle(UpdateRoleRequest(requester_is_admin=True, member_id="482913", role="Coordinator"))
        await registry.handle(DeleteRequest(requester_is_admin=True, member_id="482913"))
        await audit.drain()

        messages = [c.args[0] for c in sink.await_args_list]
        assert messages == [
            "Registered Asha Rao (482913)",
            "Status updated: 482913 → REVOKED",
            "Role updated: 482913 → Coordinator",
            "Deleted member 482913",
        ]

    async def test_failed_delivery_does_not_fail_request(self):
        sink = AsyncMock(side_effect=RuntimeError("log channel gone"))
        audit = AuditChannel(sink)
        registry, store = _registry(audit=audit)

        result = await registry.handle(RegisterRequest(requester_is_admin=True, name="Asha Rao", role="Volunteer"))
        await audit.drain()

        assert result.is_ok
        assert await store.get_by_id("482913") is not None
        sink.assert_awaited_once()

    async def test_rejected_requests_emit_nothing(self):
        sink = AsyncMock()
        audit = AuditChannel(sink)
        registry, _ = _registry(audit=audit)

        await registry.handle(RegisterRequest(requester_is_admin=False, name="Asha Rao", role="Volunteer"))
        await registry.handle(DeleteRequest(requester_is_admin=True, member_id="123456"))
        await audit.drain()

        sink.assert_not_awaited()
