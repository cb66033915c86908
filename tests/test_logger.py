import logging

from send_guard.logger import ROOT_LOGGER_NAME, get_logger


def test_get_logger_returns_service_hierarchy():
    root = get_logger()
    child = get_logger("DispatchQueue")

    assert root.name == ROOT_LOGGER_NAME
    assert child.name == f"{ROOT_LOGGER_NAME}.DispatchQueue"
    assert child.parent is root


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count
    assert logger is logging.getLogger("SendGuard.TestLogger")
