"""
Tests for logging setup and the per-position log context.
"""
import asyncio
import logging
from logging.handlers import RotatingFileHandler

import pytest
import structlog

from dlmm_monitor.monitoring.logger import position_context, setup_logging


def _file_handlers():
    return [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]


def test_repeated_setup_keeps_one_file_handler(tmp_path):
    try:
        setup_logging("INFO", "text", str(tmp_path / "logs" / "a.log"))
        setup_logging("DEBUG", "json", str(tmp_path / "logs" / "b.log"))

        handlers = _file_handlers()
        assert len(handlers) == 1
        assert handlers[0].baseFilename.endswith("b.log")
        assert (tmp_path / "logs").is_dir()
    finally:
        setup_logging("INFO", "text", None)

    assert _file_handlers() == []


def test_third_party_loggers_are_quieted():
    setup_logging("DEBUG", "text", None)

    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_position_context_binds_and_resets():
    with position_context("p1"):
        assert structlog.contextvars.get_contextvars()["position_id"] == "p1"

    assert "position_id" not in structlog.contextvars.get_contextvars()


@pytest.mark.asyncio
async def test_position_context_is_per_task():
    seen = {}

    async def check(position_id):
        with position_context(position_id):
            await asyncio.sleep(0)
            seen[position_id] = structlog.contextvars.get_contextvars()["position_id"]

    await asyncio.gather(check("a"), check("b"), check("c"))

    assert seen == {"a": "a", "b": "b", "c": "c"}
