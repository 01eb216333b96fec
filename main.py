"""
main.py — QueueCast web host entry point.

Parses CLI args, loads the YAML configuration and serves every display
route from one FastAPI process.
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback

# ──────────────────────────────────────────────────────────────
# ASCII banner
# ──────────────────────────────────────────────────────────────

_BANNER = r"""
   ___                         ____          _
  / _ \ _   _  ___ _   _  ___ / ___|__ _ ___| |_
 | | | | | | |/ _ \ | | |/ _ \ |   / _` / __| __|
 | |_| | |_| |  __/ |_| |  __/ |__| (_| \__ \ |_
  \__\_\\__,_|\___|\__,_|\___|\____\__,_|___/\__|

        QueueCast  v1.0
   Queue display & announcement engine
"""


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="queuecast",
        description="QueueCast — hospital queue display & announcement engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--config",
        default=None,
        help="Path to queuecast.yaml (default: $QUEUECAST_CONFIG or config/queuecast.yaml)",
    )
    p.add_argument(
        "--host",
        default=None,
        help="Bind address (default: server.host from the config)",
    )
    p.add_argument(
        "--port",
        type=int,
        default=None,
        help="TCP port (default: server.port from the config)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default=None,
        help="Minimum log level for stderr output (default: logging.level from the config)",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    """Application entry point. Returns process exit code."""
    print(_BANNER)
    args = _build_parser().parse_args(argv)

    from queuecast.core.config import load_config
    from queuecast.core.errors import ConfigError
    from queuecast.core.logger import get_logger, set_level

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    level = args.log_level or config.logging.level
    logging.basicConfig(level=logging.WARNING if level == "WARN" else getattr(logging, level))
    set_level(level)

    log = get_logger()
    log.info("main", "args_parsed", {
        "config": args.config,
        "host": args.host,
        "port": args.port,
        "log_level": level,
    })

    from queuecast.output.tts import TTSEngine
    from queuecast.ui.web_app import start_web_server

    tts = TTSEngine()
    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"[INFO] Displays → http://localhost:{port}/displays/<kind>/<scope>/state")
    print("       Press Ctrl-C to stop.")

    exit_code = 0
    try:
        start_web_server(config, tts, host=host, port=port)
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted — shutting down…")
    except Exception:  # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.error("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        tts.shutdown()
        log.flush()

    print(f"[INFO] QueueCast exited with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
