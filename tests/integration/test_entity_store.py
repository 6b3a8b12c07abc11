"""
Integration tests for optimistic locking in VersionedEntityStore.
"""

import asyncio

import pytest

from txoutbox.errors import ConcurrencyConflict, EntityNotFound

pytestmark = pytest.mark.integration


class TestCreateAndRead:

    async def test_create_starts_at_version_one(self, boards, board_cls):
        board = await boards.create(board_cls(name="Roadmap", version=3))

        assert board.version == 1
        stored = await boards.read(board.id)
        assert stored.version == 1
        assert stored.name == "Roadmap"

    async def test_read_missing(self, boards):
        with pytest.raises(EntityNotFound):
            await boards.read("missing")

        assert await boards.read_or_none("missing") is None


class TestOptimisticUpdate:

    async def test_update_bumps_version(self, boards, board_cls):
        board = await boards.create(board_cls(name="Roadmap"))

        def rename(b):
            b.name = "Roadmap 2026"

        updated = await boards.update(board.id, 1, rename)

        assert updated.version == 2
        assert updated.name == "Roadmap 2026"
        assert updated.updated_at >= board.updated_at

        stored = await boards.read(board.id)
        assert stored.version == 2
        assert stored.name == "Roadmap 2026"

    async def test_mutator_may_return_new_entity(self, boards, board_cls):
        board = await boards.create(board_cls(name="a"))

        updated = await boards.update(board.id, 1, lambda b: b.model_copy(update={"name": "b"}))

        assert updated.name == "b"
        assert updated.version == 2

    async def test_async_mutator(self, boards, board_cls):
        board = await boards.create(board_cls(name="a", members=[]))

        async def add_member(b):
            b.members.append("alice")

        updated = await boards.update(board.id, 1, add_member)

        assert updated.members == ["alice"]

    async def test_stale_version_conflicts(self, boards, board_cls):
        """Two writers read version 1; the second write is rejected."""
        board = await boards.create(board_cls(name="Q3"))

        await boards.update(board.id, 1, lambda b: setattr(b, "name", "Q3 final"))

        with pytest.raises(ConcurrencyConflict) as exc_info:
            await boards.update(board.id, 1, lambda b: setattr(b, "name", "Q3 draft"))

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

        stored = await boards.read(board.id)
        assert stored.version == 2
        assert stored.name == "Q3 final"

    async def test_concurrent_updates_one_wins(self, boards, board_cls):
        board = await boards.create(board_cls(name="start"))

        results = await asyncio.gather(
            *[boards.update(board.id, 1, lambda b, n=n: setattr(b, "name", f"writer-{n}")) for n in range(5)],
            return_exceptions=True
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConcurrencyConflict)]
        assert len(winners) == 1
        assert len(conflicts) == 4

        stored = await boards.read(board.id)
        assert stored.version == 2
        assert stored.name == winners[0].name

    async def test_conflicting_write_leaves_no_trace(self, boards, board_cls):
        board = await boards.create(board_cls(name="x"))
        await boards.update(board.id, 1, lambda b: setattr(b, "name", "y"))

        with pytest.raises(ConcurrencyConflict):
            await boards.update(board.id, 1, lambda b: setattr(b, "name", "z"))

        assert (await boards.read(board.id)).name == "y"

    async def test_update_missing_entity(self, boards):
        with pytest.raises(EntityNotFound):
            await boards.update("missing", 1, lambda b: None)

    async def test_mutator_cannot_change_version(self, boards, board_cls):
        board = await boards.create(board_cls(name="x"))

        with pytest.raises(ValueError):
            await boards.update(board.id, 1, lambda b: setattr(b, "version", 9))

        assert (await boards.read(board.id)).version == 1

    async def test_sequential_updates(self, boards, board_cls):
        board = await boards.create(board_cls(name="v1"))

        version = board.version
        for n in range(2, 6):
            updated = await boards.update(board.id, version, lambda b, n=n: setattr(b, "name", f"v{n}"))
            assert updated.version == version + 1
            version = updated.version

        assert (await boards.read(board.id)).version == 5
