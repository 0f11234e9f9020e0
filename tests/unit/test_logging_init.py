from __future__ import annotations

import logging
from io import StringIO

from ptrs_pipeline.logging import init as log_init
from ptrs_pipeline.logging.init import LabeledFormatter, get_logger, log_summary, setup_logging


def test_setup_logging_configures_app_logger():
    logger = setup_logging()
    assert logger.name == "ptrs_pipeline"
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, LabeledFormatter)
    assert logger.propagate is False


def test_setup_logging_idempotent():
    first = setup_logging()
    second = setup_logging(logging.DEBUG)
    assert first is second
    assert len(first.handlers) == 1
    assert get_logger() is first


def test_labeled_prefixes():
    out = StringIO()
    logger = logging.getLogger("test_ptrs_labels")
    logger.setLevel(logging.INFO)
    for h in logger.handlers[:]:
        logger.removeHandler(h)
    logging.addLevelName(25, "SUMMARY")
    handler = logging.StreamHandler(out)
    handler.setFormatter(LabeledFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    logger.info("staging run r1")
    logger.warning("rules not applied")
    logger.error("dataset d1 failed")
    logger.log(25, "run=r1 rows=3")

    assert out.getvalue().strip().split("\n") == [
        "INFO staging run r1",
        "WARN rules not applied",
        "ERROR dataset d1 failed",
        "SUMMARY run=r1 rows=3",
    ]


def test_module_loggers_inherit_app_handler(capsys):
    setup_logging()
    logging.getLogger("ptrs_pipeline.services.staging").info("staged 3 rows")
    assert "INFO staged 3 rows" in capsys.readouterr().out


def test_log_summary_writes_summary_label():
    out = StringIO()
    logger = setup_logging()
    logger.handlers[0].setStream(out)
    log_summary("run=r1 rows=10 excluded=1 errors=0 status=passed elapsed_sec=2")
    assert out.getvalue().strip() == "SUMMARY run=r1 rows=10 excluded=1 errors=0 status=passed elapsed_sec=2"


def test_reset_logging_clears_handlers():
    logger = setup_logging()
    log_init.reset_logging()
    assert logger.handlers == []
    assert log_init._logger is None
