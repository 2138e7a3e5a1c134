"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from account_ledger.observability.logger import (
    get_logger,
    get_operation_id,
    new_operation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()


def _last_json_line(err: str) -> dict:
    return json.loads(err.strip().splitlines()[-1])


class TestSetupLogging:
    def test_stdlib_records_carry_bound_context(self, capsys):
        setup_logging("INFO", "json")
        with structlog.contextvars.bound_contextvars(operation="credit_account", account_id="a1"):
            logging.getLogger("account_ledger.test").info("Account credited amount=%d", 5)

        line = _last_json_line(capsys.readouterr().err)
        assert line["event"] == "Account credited amount=5"
        assert line["operation"] == "credit_account"
        assert line["account_id"] == "a1"
        assert line["level"] == "info"
        assert line["logger"] == "account_ledger.test"
        assert line["operation_id"]

    def test_structlog_logger_renders_kwargs(self, capsys):
        setup_logging("DEBUG", "json")
        get_logger("account_ledger.test").debug("ledger_ready", store="memory")
        line = _last_json_line(capsys.readouterr().err)
        assert line["event"] == "ledger_ready"
        assert line["store"] == "memory"

    def test_level_filters(self, capsys):
        setup_logging("WARNING", "json")
        logging.getLogger("account_ledger.test").info("hidden")
        assert capsys.readouterr().err == ""


class TestOperationId:
    def test_new_operation_id_is_sticky(self):
        oid = new_operation_id()
        assert get_operation_id() == oid
        assert new_operation_id() != oid
