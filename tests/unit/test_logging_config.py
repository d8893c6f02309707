import io
import logging
import os
import shutil
import tempfile
import unittest

from l10n.logging_config import LOGGER_NAME, TqdmLoggingHandler, setup_logger


class TestSetupLogger(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp(prefix="l10n-logging-")

    def tearDown(self):
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_file_and_console_handlers(self):
        log_file = os.path.join(self.tmp_dir, "logs", "l10n.log")

        logger = setup_logger("debug", log_file, True)

        self.assertEqual(logger.level, logging.DEBUG)
        self.assertFalse(logger.propagate)
        self.assertEqual(len(logger.handlers), 2)
        self.assertTrue(any(isinstance(h, TqdmLoggingHandler) for h in logger.handlers))

        logging.getLogger("l10n.plan").warning("resolved nothing")
        for handler in logger.handlers:
            handler.flush()
        with open(log_file, 'r', encoding='utf-8') as f:
            self.assertIn("l10n.plan - WARNING - resolved nothing", f.read())

    def test_reconfiguring_replaces_handlers(self):
        setup_logger("INFO", "", True)
        logger = setup_logger("INFO", "", True)
        self.assertEqual(len(logger.handlers), 1)

    def test_no_handlers_when_disabled(self):
        logger = setup_logger("bogus", "", False)
        self.assertEqual(logger.handlers, [])
        self.assertEqual(logger.level, logging.INFO)

    def test_tqdm_handler_writes_to_stream(self):
        stream = io.StringIO()
        handler = TqdmLoggingHandler(stream=stream)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

        handler.emit(logging.makeLogRecord({"levelname": "ERROR", "msg": "boom"}))

        self.assertIn("ERROR: boom", stream.getvalue())
