import json
import logging
import os

_configured = False

diag_log = logging.getLogger("fxwatch.diag")


def setup_logging():
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _configured = True


def log_diagnostic(enabled: bool, **data):
    """Structured debug line, off unless MARKET_ALERT_DIAGNOSTICS=true."""
    if not enabled:
        return
    diag_log.debug("%s", json.dumps(data, default=str))
