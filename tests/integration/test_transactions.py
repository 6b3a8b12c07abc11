"""
Integration tests for transaction nesting on a single adapter.
"""

import asyncio

import pytest

from txoutbox.database import OUTBOX_TABLE, TRANSACTION_LOG_TABLE
from txoutbox.outbox import OutboxWriter, UnitOfWork
from txoutbox.saga import LogLevel, TransactionLog

pytestmark = pytest.mark.integration


class Boom(Exception):
    pass


async def _names(db):
    rows = await db.fetch("SELECT name FROM boards ORDER BY name")
    return [row["name"] for row in rows]


class TestJoiningActiveTransaction:
    """Calls made without conn inside an open transaction join it."""

    async def test_store_read_inside_unit_of_work(self, db, boards, board_cls):
        board = await boards.create(board_cls(name="Roadmap"))

        async def read_inside():
            async with UnitOfWork(db=db) as uow:
                await uow.update(boards, board.id, 1, lambda b: setattr(b, "name", "Roadmap v2"))
                return await boards.read(board.id)

        stored = await asyncio.wait_for(read_inside(), 2)

        assert stored.name == "Roadmap v2"
        assert stored.version == 2

    async def test_adapter_query_sees_uncommitted_insert(self, db):
        async with db.transaction():
            event = await OutboxWriter(db).enqueue("board.created", "b1", {})
            count = await asyncio.wait_for(
                db.fetchval(f"SELECT COUNT(*) FROM {OUTBOX_TABLE} WHERE id = $1", event.id), 2
            )

        assert count == 1

    async def test_nested_failure_rolls_back_only_inner_writes(self, db, boards, board_cls):
        async with db.transaction() as txn:
            await boards.create(board_cls(name="kept"), conn=txn)
            with pytest.raises(Boom):
                async with db.transaction() as inner:
                    await boards.create(board_cls(name="discarded"), conn=inner)
                    raise Boom()
            await boards.create(board_cls(name="after"), conn=txn)

        assert await _names(db) == ["after", "kept"]

    async def test_outer_rollback_discards_nested_writes(self, db, boards, board_cls):
        with pytest.raises(Boom):
            async with db.transaction():
                async with db.transaction() as inner:
                    await boards.create(board_cls(name="nested"), conn=inner)
                raise Boom()

        assert await _names(db) == []

    async def test_transaction_closed_after_block(self, db, boards, board_cls):
        async with db.transaction() as txn:
            pass

        assert txn.is_open is False
        await asyncio.wait_for(boards.create(board_cls(name="later")), 2)
        assert await _names(db) == ["later"]


class TestSavepoints:

    async def test_savepoint_rollback_keeps_earlier_statements(self, db, boards, board_cls):
        async with db.transaction() as txn:
            await boards.create(board_cls(name="first"), conn=txn)
            with pytest.raises(Boom):
                async with txn.savepoint():
                    await boards.create(board_cls(name="second"), conn=txn)
                    raise Boom()

        assert await _names(db) == ["first"]


class TestTransactionLogInsideTransaction:

    async def test_failed_log_write_leaves_caller_transaction_usable(self, db, boards, board_cls):
        await db.execute(f"DROP TABLE {TRANSACTION_LOG_TABLE}")
        txlog = TransactionLog(db)

        async with db.transaction() as txn:
            await boards.create(board_cls(name="before"), conn=txn)
            entry = await txlog.log("txn-1", LogLevel.INFO, "Saga execution started", conn=txn)
            await boards.create(board_cls(name="after"), conn=txn)

        assert entry.message == "Saga execution started"
        assert await _names(db) == ["after", "before"]
