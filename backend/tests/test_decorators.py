import logging

import pytest

from signal_desk.services.decorators import log_execution

pytestmark = pytest.mark.anyio


async def test_logs_row_count(caplog):
    @log_execution
    async def close_rows():
        return 3

    with caplog.at_level(logging.DEBUG, logger="signal_desk.services.decorators"):
        assert await close_rows() == 3
    assert any("close_rows -> 3 rows" in r.getMessage() for r in caplog.records)


async def test_errors_are_logged_and_reraised(caplog):
    @log_execution
    async def broken():
        raise RuntimeError("database went away")

    with pytest.raises(RuntimeError):
        await broken()
    assert any(r.levelname == "ERROR" and "database went away" in r.getMessage() for r in caplog.records)


def test_rejects_plain_functions():
    with pytest.raises(TypeError):
        log_execution(lambda: 1)
