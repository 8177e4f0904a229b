"""
Tests for connection-level lock-wait settings.
"""
import sqlalchemy as sa

from orderdesk.common.database import _mysql_lock_wait


class _Cursor:
    def __init__(self, log):
        self.log = log

    def execute(self, statement):
        self.log.append(statement)

    def close(self):
        self.log.append("close")


class _Connection:
    def __init__(self):
        self.log = []

    def cursor(self):
        return _Cursor(self.log)


def test_mysql_lock_wait_is_set_once_per_connection():
    hook = _mysql_lock_wait(3)
    first, second = _Connection(), _Connection()

    hook(first, None)
    hook(second, None)

    assert first.log == ["SET SESSION innodb_lock_wait_timeout = 3", "close"]
    assert second.log == first.log


async def test_sqlite_unit_of_work_issues_no_lock_statements(database):
    statements = []

    def record(conn, cursor, statement, *args):
        statements.append(statement)

    sa.event.listen(database.engine.sync_engine, "before_cursor_execute", record)
    try:
        async with database.unit_of_work():
            pass
    finally:
        sa.event.remove(database.engine.sync_engine, "before_cursor_execute", record)

    assert not any("lock" in s.lower() for s in statements)
