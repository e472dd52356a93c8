#!/usr/bin/env python3
"""
Botify Manager Daemon

Hosts one CodexBridge:
- Starts the Codex MCP server and runs the initialize handshake
- Polls the inbox for chat messages and hands them to the bridge
- Writes replies to the outbox
- Exits 1 when the backend dies unexpectedly, 0 on /relive or a stop signal
"""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from botify import perf
from botify.bridge import CodexBridge
from botify.chat import DirectoryInbox, DirectoryOutbox, InboundSource
from botify.common import INBOX_DIR, LOGS_DIR, OUTBOX_DIR, SESSION_LOG_DIR, ensure_directory
from botify.config import BridgeConfig, load_bridge_config
from botify.errors import BridgeError

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

ERROR_BACKOFF = 3.0  # seconds


def setup_logging(logs_dir=LOGS_DIR, level: int = logging.INFO) -> None:
    """Stdout logging for the daemon plus a lifecycle file log."""
    ensure_directory(logs_dir)
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )
    if not any(isinstance(h, logging.FileHandler) for h in lifecycle_log.handlers):
        lifecycle_handler = logging.FileHandler(logs_dir / "lifecycle.log")
        lifecycle_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
        lifecycle_log.addHandler(lifecycle_handler)
    lifecycle_log.setLevel(logging.INFO)


class Manager:
    """Runs the bridge until a signal, /relive, or a fatal backend error."""

    def __init__(
        self,
        config: BridgeConfig,
        inbox: Optional[InboundSource] = None,
        bridge: Optional[CodexBridge] = None,
    ):
        self.config = config
        self.inbox = inbox or DirectoryInbox(config.inbox_dir or INBOX_DIR)
        self.bridge = bridge or CodexBridge(
            config,
            DirectoryOutbox(config.outbox_dir or OUTBOX_DIR, chunk_size=config.output_chunk),
            session_log_dir=SESSION_LOG_DIR,
        )
        self.exit_code = 0
        self._stop_event = asyncio.Event()
        self._fatal_error: Optional[BridgeError] = None

    def _on_fatal(self, error: BridgeError) -> None:
        log.error(f"Fatal bridge error: {error}")
        lifecycle_log.info(f"DAEMON | FATAL | {type(error).__name__}")
        self._fatal_error = error
        self.exit_code = 1
        self._stop_event.set()

    def request_stop(self, sig: Optional[signal.Signals] = None) -> None:
        if sig is not None:
            log.info(f"Received {sig.name}, shutting down")
        self._stop_event.set()

    async def _poll_inbox(self) -> None:
        while not self._stop_event.is_set():
            try:
                messages = await self.inbox.poll()
                for message in messages:
                    await self.bridge.enqueue(message.chat_id, message.text, sender=message.sender)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"Inbox polling error: {e}")
                perf.error("inbox_poll_failed", component="manager")
                await asyncio.sleep(ERROR_BACKOFF)
                continue
            await asyncio.sleep(self.config.poll_interval)

    async def _watch_relive(self) -> None:
        await self.bridge.relive_requested.wait()
        lifecycle_log.info("DAEMON | RELIVE")
        self._stop_event.set()

    async def run(self) -> int:
        """Main async loop. Returns the process exit status."""
        log.info("=" * 60)
        log.info(f"Botify manager starting (command: {self.config.command})")
        log.info(f"Working dir: {self.config.cwd}")
        log.info("=" * 60)
        lifecycle_log.info("DAEMON | START")

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.request_stop, signal.SIGTERM)
        loop.add_signal_handler(signal.SIGINT, self.request_stop, signal.SIGINT)

        unsubscribe = self.bridge.on_fatal(self._on_fatal)
        try:
            try:
                await self.bridge.start()
            except BridgeError as e:
                log.error(f"Bridge failed to start: {e}")
                self.exit_code = 1
                return self.exit_code

            tasks = [
                asyncio.create_task(self._poll_inbox(), name="inbox-poll"),
                asyncio.create_task(self._watch_relive(), name="relive-watch"),
            ]
            try:
                await self._stop_event.wait()
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            await self._shutdown()
            unsubscribe()
            loop.remove_signal_handler(signal.SIGTERM)
            loop.remove_signal_handler(signal.SIGINT)

        return self.exit_code

    async def _shutdown(self) -> None:
        """Graceful shutdown."""
        log.info("DAEMON | SHUTDOWN | START")
        lifecycle_log.info("DAEMON | SHUTDOWN | START")
        try:
            await self.bridge.stop()
        except BridgeError as e:
            log.error(f"Error stopping bridge: {e}")
        log.info("DAEMON | SHUTDOWN | COMPLETE")
        lifecycle_log.info(f"DAEMON | SHUTDOWN | COMPLETE | exit={self.exit_code}")


def main() -> int:
    # Validate config before anything else
    config = load_bridge_config()

    setup_logging()
    perf.configure(LOGS_DIR)

    manager = Manager(config)
    return asyncio.run(manager.run())


if __name__ == "__main__":
    raise SystemExit(main())
