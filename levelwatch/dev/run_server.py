from __future__ import annotations

import logging
import signal
import sys

from levelwatch.bootstrap import build_app_system
from levelwatch.config.logging_setup import configure_logging
from levelwatch.config.yaml_config import load_app_config

logger = logging.getLogger(__name__)


def _on_sigterm(signum, frame) -> None:
    raise SystemExit(0)


def main() -> None:
    """
    Start the alarm server: HTTP API, command poller and notification worker.

    Notes
    -----
    - Loads configuration from `config.yaml` and `.env` by default.
    - Optional CLI usage:
        python -m levelwatch.dev.run_server --config path/to/config.yaml
    """
    config_path = None
    if "--config" in sys.argv:
        i = sys.argv.index("--config")
        if i + 1 < len(sys.argv):
            config_path = sys.argv[i + 1]

    cfg = load_app_config(config_path)
    configure_logging(cfg.log_level)

    wiring = build_app_system(cfg=cfg)
    signal.signal(signal.SIGTERM, _on_sigterm)

    d = cfg.deployment
    logger.info("Starting on %s (%s, v%s)", d.platform, d.environment, d.version)
    wiring.start()
    try:
        # IMPORTANT: do NOT use debug=True in production
        wiring.http_app.run(host=cfg.server.host, port=cfg.server.port, debug=False, threaded=True)
    except KeyboardInterrupt:
        pass
    finally:
        s = wiring.engine.status()
        logger.info(
            "Shutting down: %d connections, last reading %s",
            s.connection_count,
            s.last_reading_at.isoformat() if s.last_reading_at else "none",
        )
        wiring.stop()


if __name__ == "__main__":
    main()
