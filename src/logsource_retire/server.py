"""Entrypoint for the log source retirement service."""

from __future__ import annotations

import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from logsource_retire import __version__
from logsource_retire.config import load_settings
from logsource_retire.logging_utils import configure_logging, get_logger
from logsource_retire.utils.masking import mask_secret


def run_entrypoint() -> None:
    """Serve the HTTP API with uvicorn."""
    settings = load_settings()
    configure_logging()
    from logsource_retire.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to run the HTTP server") from exc

    logger = get_logger(__name__)
    logger.info("Initializing log source retirement service v%s", __version__)
    if not settings.siem.configured:
        logger.warning("SIEM_HOSTNAME / SIEM_API_KEY are not set; jobs will fail to fetch")
    else:
        logger.info(
            "SIEM admin API at %s (key %s)",
            settings.siem.base_url,
            mask_secret(settings.siem.api_key),
        )
    logger.info("Rollback ledger at %s", settings.rollback.sqlite_path)

    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
