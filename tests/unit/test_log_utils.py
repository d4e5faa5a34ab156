import json
import logging

import pytest

from tether.log_utils import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def test_json_logs_include_extra(restore_root_logger, capsys):
    setup_logging(logging.DEBUG, json=True)

    logging.getLogger("tether.clients.kernel").info(
        "Kernel status idle -> busy", extra={"kernel_id": "k1", "msg_type": "status"}
    )

    line = capsys.readouterr().err.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "Kernel status idle -> busy"
    assert record["kernel_id"] == "k1"
    assert record["msg_type"] == "status"
    assert record["level"] == "info"
    assert record["logger"] == "tether.clients.kernel"


def test_quiets_noisy_libraries(restore_root_logger):
    setup_logging(logging.DEBUG)

    assert logging.getLogger("websockets").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
