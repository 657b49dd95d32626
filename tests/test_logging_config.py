from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from resumable_trainer.common.logging_config import configure_logging


def test_log_file_is_written_under_log_dir(tmp_path) -> None:
    root = logging.getLogger()
    saved, saved_level = list(root.handlers), root.level
    try:
        path = configure_logging(logging.INFO, log_dir=tmp_path / "logs")
        logging.getLogger("resumable_trainer.test").info("epoch 3 saved")
        for handler in root.handlers:
            handler.flush()

        assert path == tmp_path / "logs" / "run.log"
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        line = path.read_text(encoding="utf-8").strip()
        assert "| INFO | MainThread | resumable_trainer.test | epoch 3 saved" in line
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved
        root.setLevel(saved_level)


def test_stderr_only_without_log_dir() -> None:
    root = logging.getLogger()
    saved, saved_level = list(root.handlers), root.level
    try:
        assert configure_logging(logging.WARNING) is None
        assert root.level == logging.WARNING
        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
    finally:
        root.handlers[:] = saved
        root.setLevel(saved_level)
