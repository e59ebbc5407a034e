import io
import json
import logging

import pytest

from veocreate.observability import ROOT_LOGGER, VEOLogger, configure_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger(ROOT_LOGGER)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(logging.NOTSET)


def test_json_lines_carry_control_file_context():
    stream = io.StringIO()
    configure_logging(logging.DEBUG, json_output=True, stream=stream)
    VEOLogger("interpreter").warning("bad depth", line=5, command="IO", veo="rec", depth=-1)

    event = json.loads(stream.getvalue().strip())
    assert event["level"] == "warning"
    assert event["logger"] == "veocreate.interpreter"
    assert event["message"] == "bad depth"
    assert event["line"] == 5
    assert event["command"] == "IO"
    assert event["veo"] == "rec"
    assert event["context"] == {"depth": -1}
    assert "timestamp" in event


def test_empty_fields_are_omitted():
    stream = io.StringIO()
    configure_logging(logging.INFO, json_output=True, stream=stream)
    VEOLogger("cli").info("starting")
    event = json.loads(stream.getvalue())
    assert set(event) == {"timestamp", "level", "logger", "message"}


def test_text_format_and_level():
    stream = io.StringIO()
    configure_logging(logging.WARNING, stream=stream)
    log = VEOLogger("interpreter")
    log.info("hidden")
    log.error("shown")
    assert stream.getvalue() == "ERROR: shown\n"


def test_reconfiguring_replaces_handler():
    first, second = io.StringIO(), io.StringIO()
    configure_logging(logging.INFO, stream=first)
    configure_logging(logging.INFO, stream=second)
    VEOLogger("x").info("once")
    assert first.getvalue() == ""
    assert second.getvalue() == "INFO: once\n"
    ours = [h for h in logging.getLogger(ROOT_LOGGER).handlers if getattr(h, "_veocreate", False)]
    assert len(ours) == 1


def test_library_loggers_share_the_hierarchy():
    stream = io.StringIO()
    configure_logging(logging.DEBUG, stream=stream)
    logging.getLogger("veocreate.veo").debug("from a module logger")
    assert "from a module logger" in stream.getvalue()
