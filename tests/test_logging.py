from __future__ import annotations

import json
import logging

from host_orchestrator.core.logging import ROOT_LOGGER_NAME, JsonLineFormatter, configure_logging


def test_json_line_formatter_keeps_extra_fields():
    record = logging.LogRecord(
        name="host_orchestrator.execution.executor",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="step %d failed",
        args=(3,),
        exc_info=None,
    )
    record.backend = "apk"

    payload = json.loads(JsonLineFormatter().format(record))

    assert payload["message"] == "step 3 failed"
    assert payload["level"] == "ERROR"
    assert payload["backend"] == "apk"
    assert "args" not in payload


def test_configure_logging_replaces_its_handler():
    logger = configure_logging("debug")
    configure_logging("warning", json_lines=True)

    own = [h for h in logger.handlers if getattr(h, "_host_orchestrator", False)]
    assert logger.name == ROOT_LOGGER_NAME
    assert len(own) == 1
    assert isinstance(own[0].formatter, JsonLineFormatter)
    assert logger.level == logging.WARNING

    logger.removeHandler(own[0])
    logger.setLevel(logging.NOTSET)
