"""Apropos daemon: wires the session bridge together and serves the API."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from apropos.api_server import APIServer
from apropos.config import config, reload_config
from apropos.core.activity_detector import ActivityDetector
from apropos.core.events import EventHub
from apropos.core.input_classifier import InputClassifier
from apropos.core.projects import ProjectDirectory, StaticProjectDirectory
from apropos.core.session_registry import SessionRegistry
from apropos.core.task_registry import TaskRegistry
from apropos.logging_config import setup_logging

logger = logging.getLogger(__name__)


class AproposDaemon:
    """Owns the registry, detector and API server for one process."""

    def __init__(self, projects: Optional[ProjectDirectory] = None) -> None:
        self.events = EventHub()
        self.projects = projects or StaticProjectDirectory.from_config(config.projects)
        self.registry = SessionRegistry(self.events)
        self.classifier = InputClassifier()
        self.detector = ActivityDetector(self.registry.list, self.events)
        self.task_registry = TaskRegistry()
        self.api_server = APIServer(self.registry, self.projects, self.classifier, self.detector)
        self.shutdown_event = asyncio.Event()

        # Per-session input, detector state and open terminals go away with the session
        self.registry.add_removal_listener(lambda session: self.classifier.discard(session.id))
        self.registry.add_removal_listener(self.detector.discard)
        self.registry.add_removal_listener(self.api_server.close_session_bridges)

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Restore sessions from tmux, start the detector and serve the API."""
        logger.info("Apropos daemon starting (%d projects)", len(self.projects.list()))
        restored = await self.registry.reconcile(self.projects)
        logger.info("Restored %d sessions from tmux", len(restored))

        if config.detector.enabled:
            self.task_registry.spawn(self.detector.run(), name="activity-detector")
        await self.api_server.start(host, port)

    async def stop(self) -> None:
        logger.info("Apropos daemon stopping")
        await self.api_server.stop()
        await self.detector.stop()
        await self.task_registry.shutdown(timeout=5.0)
        logger.info("Apropos daemon stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="apropos", description="Terminal session bridge for tmux-hosted agents")
    parser.add_argument("--config", help="Path to config.yml (default: $APROPOS_CONFIG_PATH or ~/.apropos/config.yml)")
    parser.add_argument("--host", help="Interface to bind (default from config)")
    parser.add_argument("--port", type=int, help="Port to bind (default from config)")
    parser.add_argument("--log-level", help="Log level (default: $APROPOS_LOG_LEVEL or INFO)")
    return parser


async def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the daemon until SIGINT/SIGTERM."""
    daemon = AproposDaemon()

    loop = asyncio.get_running_loop()

    def signal_handler(signum: int) -> None:
        logger.info("Received %s signal...", signal.Signals(signum).name)
        daemon.shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await daemon.start(host, port)
        await daemon.shutdown_event.wait()
    finally:
        await daemon.stop()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Console entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    if args.config:
        reload_config(args.config)

    try:
        asyncio.run(run(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    except (RuntimeError, TimeoutError, OSError) as e:
        logger.error("Daemon failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
