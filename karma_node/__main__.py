# karma_node/__main__.py
"""
Entry point for running the Karma Node API as a module:
    python -m karma_node [--host 0.0.0.0] [--port 8000] [--config-dir .]
                         [--data-dir ./data] [--driver json|memory]
Env toggles (see karma_node.config):
  KARMA_OWNER=...              -> owner account for privileged routes
  KARMA_PERSISTENCE_DRIVER=... -> memory | json
  KARMA_DAO_GATING_MODE=...    -> override | all
"""

from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from .config import configure_logging, get_bind_host, get_bind_port, load_config
from .engine import build_engine
from .karma_api import create_app

log = logging.getLogger("karma_node")


def parse_args(argv=None):
    p = argparse.ArgumentParser(
        prog="karma-node",
        description="Run the Karma Node reputation + access control API",
    )
    p.add_argument(
        "--config-dir",
        default=os.getcwd(),
        help="Directory holding karma_config.yaml (default: cwd)",
    )
    p.add_argument("--host", default=None, help="Bind address (overrides config)")
    p.add_argument("--port", type=int, default=None, help="Port (overrides config)")
    p.add_argument("--data-dir", default=None, help="Snapshot directory (overrides config)")
    p.add_argument(
        "--driver",
        choices=["memory", "json"],
        default=None,
        help="Persistence driver (overrides config)",
    )
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config_dir)
    if args.data_dir:
        cfg["persistence"]["data_dir"] = args.data_dir
    if args.driver:
        cfg["persistence"]["driver"] = args.driver

    configure_logging(cfg)

    engine = build_engine(cfg)
    app = create_app(engine, cfg)

    host = args.host or get_bind_host(cfg)
    port = args.port or get_bind_port(cfg)
    log.info("karma node starting on %s:%d (owner=%s, driver=%s)", host, port, engine.owner, cfg["persistence"]["driver"])
    uvicorn.run(app, host=host, port=port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
