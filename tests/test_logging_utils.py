from __future__ import annotations

import logging
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from logsource_retire import logging_utils


def _settings(log_file: str | None, level: str = "INFO") -> SimpleNamespace:
    return SimpleNamespace(
        logging=SimpleNamespace(level=level, file=log_file),
    )


@patch("logsource_retire.logging_utils.load_settings")
@patch("logsource_retire.logging_utils.logging.basicConfig")
def test_configure_logging_stream_only(
    mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
) -> None:
    mock_load_settings.return_value = _settings(None)

    logging_utils.configure_logging()

    kwargs = mock_basic_config.call_args.kwargs
    assert kwargs["force"] is True
    assert kwargs["level"] == logging.INFO
    assert len(kwargs["handlers"]) == 1


@patch("logsource_retire.logging_utils.load_settings")
@patch("logsource_retire.logging_utils.logging.basicConfig")
def test_configure_logging_quiets_http_client_loggers(
    _mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
) -> None:
    mock_load_settings.return_value = _settings(None, level="debug")

    logging_utils.configure_logging()

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


@patch("logsource_retire.logging_utils.load_settings")
@patch("logsource_retire.logging_utils.logging.basicConfig")
def test_configure_logging_with_file(
    mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
    tmp_path,
) -> None:
    mock_load_settings.return_value = _settings(str(tmp_path / "logs" / "retire.log"))

    logging_utils.configure_logging()

    handlers = mock_basic_config.call_args.kwargs["handlers"]
    assert len(handlers) == 2
    assert isinstance(handlers[1], logging.FileHandler)
    handlers[1].close()


@patch("logsource_retire.logging_utils.load_settings")
@patch("logsource_retire.logging_utils.logging.FileHandler", side_effect=OSError("permission denied"))
@patch("logsource_retire.logging_utils._logger")
def test_configure_logging_file_handler_error(
    mock_logger: MagicMock,
    _mock_file_handler: MagicMock,
    mock_load_settings: MagicMock,
    tmp_path,
) -> None:
    mock_load_settings.return_value = _settings(str(tmp_path / "app.log"))

    logging_utils.configure_logging()

    mock_logger.warning.assert_called_once()


@patch("logsource_retire.logging_utils.load_settings")
@patch("logsource_retire.logging_utils.logging.basicConfig")
def test_explicit_settings_skip_loading(
    mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
) -> None:
    logging_utils.configure_logging(_settings(None, level="verbose"))

    mock_load_settings.assert_not_called()
    assert mock_basic_config.call_args.kwargs["level"] == logging.INFO


def test_get_logger_auto_configures(monkeypatch) -> None:
    configured = threading.Event()
    monkeypatch.setattr(logging_utils, "_configured", configured)

    calls = {"count": 0}

    def fake_configure() -> None:
        calls["count"] += 1
        configured.set()

    monkeypatch.setattr(logging_utils, "configure_logging", fake_configure)

    assert logging_utils.get_logger("test.logger").name == "test.logger"
    logging_utils.get_logger("test.other")
    assert calls["count"] == 1
