from datetime import datetime

import pytest

from member_store import JsonMemberStore, MemoryMemberStore, SQLiteMemberStore

FIXED_NOW = datetime(2026, 10, 19, 9, 30, 0)

BACKENDS = ["memory", "json", "sqlite"]


def sequence_ids(*ids):
    """Id factory that hands out the given ids in order."""
    iterator = iter(ids)
    return lambda: next(iterator)


@pytest.fixture
def make_store(tmp_path):
    def _make(kind="memory", **kwargs):
        kwargs.setdefault("clock", lambda: FIXED_NOW)
        if kind == "memory":
            return MemoryMemberStore(**kwargs)
        if kind == "json":
            return JsonMemberStore(tmp_path / "members.json", **kwargs)
        if kind == "sqlite":
            return SQLiteMemberStore(tmp_path / "members.db", **kwargs)
        raise ValueError(kind)

    return _make
