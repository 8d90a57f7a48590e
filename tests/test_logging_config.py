"""Tests for the package logging setup."""
import logging

from glassform.logging_config import setup_logging


class TestSetupLogging:

    def test_file_handler_receives_solver_messages(self, tmp_path):
        log_file = tmp_path / "run.log"
        setup_logging(logging.DEBUG, str(log_file))
        try:
            logging.getLogger("glassform.fea.solvers.thermal").debug("Newton iteration 1")
            for handler in logging.getLogger("glassform").handlers:
                handler.flush()
            text = log_file.read_text(encoding="utf-8")
            assert "Logging initialized." in text
            assert "glassform.fea.solvers.thermal - DEBUG - Newton iteration 1" in text
        finally:
            logger = logging.getLogger("glassform")
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()

    def test_repeated_setup_does_not_duplicate_handlers(self):
        logger = logging.getLogger("glassform")
        try:
            setup_logging()
            setup_logging()
            assert len(logger.handlers) == 1
        finally:
            logger.handlers.clear()
