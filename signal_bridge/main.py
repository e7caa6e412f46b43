#!/usr/bin/env python3
"""
Signal AI Bridge
Relays triggered Signal messages to the agent service and sends the reply back.

Architecture:
- Signal loop (reactive): polls signal-cli, routes each event in order
- Sweep loop: expires pending correlations on its own timer
- Pending table: prompts the operator sent from a linked device, waiting for
  the delivery receipt that names the real recipient
- Completion client: one HTTP call per prompt, failures become an apology
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from typing import Optional

from .completion import CompletionClient
from .config import load_settings
from .errors import CompletionError, ConfigurationError, TransportPullFailure, TransportPushFailure
from .events import EventKind, IncomingEvent, Recipient, classify
from .pending import PendingCorrelationTable
from .transports import BaseTransport, SignalCLITransport
from .triggers import TriggerMatcher

# Configure logging - DEBUG level shows poll details
log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

APOLOGY = "Sorry, I encountered an error processing your request."

# Seen-message cache bounds (memory only)
SEEN_MAX = 1000
SEEN_KEEP = 500

# Consecutive pull failures before we log at ERROR
PULL_FAILURE_ESCALATION = 3


# =============================================================================
# Bridge
# =============================================================================

class Bridge:
    """Dispatch loop: poll, classify, correlate, complete, reply."""

    def __init__(
        self,
        config: dict,
        transport: Optional[BaseTransport] = None,
        completion: Optional[CompletionClient] = None,
        pending: Optional[PendingCorrelationTable] = None
    ):
        self.config = config
        self.transport = transport if transport is not None else SignalCLITransport(config)
        self.completion = completion if completion is not None else CompletionClient(
            config['agent_url'], timeout=config.get('completion_timeout', 30)
        )
        self.pending = pending if pending is not None else PendingCorrelationTable(
            ttl=config.get('pending_ttl', 300)
        )
        self.triggers = TriggerMatcher.from_config(config)

        # Settings
        self.poll_interval = config.get('poll_interval', 5)
        self.sweep_interval = config.get('sweep_interval', 60)

        # State
        self._seen: dict[tuple, None] = {}  # insertion-ordered set of (source, timestamp)
        self._pull_failures = 0

        # Shutdown coordination
        self._shutdown_event = asyncio.Event()

    async def run(self):
        """Main entry point - runs polling and sweeping as independent tasks."""
        logger.info("Starting Signal AI Bridge")
        logger.info(f"Transport: {self.transport!r}")
        logger.info(f"Agent: {self.completion!r}")
        logger.info(f"Triggers: {[rule.prefix for rule in self.triggers.rules]}")
        logger.info(f"Poll every {self.poll_interval}s, sweep every {self.sweep_interval}s, "
                    f"pending TTL {self.pending.ttl}s")

        try:
            await asyncio.gather(
                self._signal_loop(),
                self._sweep_loop(),
            )
        except asyncio.CancelledError:
            logger.info("Tasks cancelled - shutting down")
        finally:
            self._shutdown_event.set()
            dropped = len(self.pending)
            self.pending.clear()
            logger.info(f"Shutting down... discarded {dropped} pending correlation(s)")

    def request_shutdown(self):
        """Stop after the in-flight event; no new poll or sweep starts."""
        self._shutdown_event.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    async def _sleep_or_shutdown(self, seconds: float) -> bool:
        """
        Sleep for specified seconds, but wake early if shutdown is requested.

        Returns True if shutdown was requested, False if sleep completed normally.
        """
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(),
                timeout=seconds
            )
            return True
        except asyncio.TimeoutError:
            return False

    async def _signal_loop(self):
        """Independent loop for Signal polling."""
        logger.info("[SIGNAL LOOP] Started")
        while not self._shutdown_event.is_set():
            try:
                await self._process_messages()
            except TransportPullFailure as e:
                self._pull_failures += 1
                log = logger.error if self._pull_failures >= PULL_FAILURE_ESCALATION else logger.warning
                log(f"[POLL] {e} (failure {self._pull_failures}) - retrying next cycle")
            except Exception as e:
                logger.exception(f"[SIGNAL LOOP] Error: {e}")
            if await self._sleep_or_shutdown(self.poll_interval):
                break
        logger.info("[SIGNAL LOOP] Stopped")

    async def _sweep_loop(self):
        """Independent loop that expires stale pending correlations."""
        logger.info(f"[SWEEP LOOP] Started (interval: {self.sweep_interval}s)")
        while not self._shutdown_event.is_set():
            if await self._sleep_or_shutdown(self.sweep_interval):
                break
            try:
                self.pending.sweep_expired()
            except Exception as e:
                logger.error(f"[SWEEP LOOP] Error: {e}")
        logger.info("[SWEEP LOOP] Stopped")

    async def _process_messages(self):
        """Pull one batch and dispatch it in order."""
        events = await self.transport.receive_events()
        self._pull_failures = 0

        if events:
            logger.info(f"[POLL] Received {len(events)} events")

        for event in events:
            if self._shutdown_event.is_set():
                logger.info("[POLL] Shutdown requested - leaving the rest of the batch")
                break
            try:
                await self.process_event(event)
            except Exception as e:
                logger.exception(f"[DISPATCH] Failed on event ts={event.timestamp} from={event.source}: {e}")

    # =========================================================================
    # Routing
    # =========================================================================

    async def process_event(self, event: IncomingEvent):
        """Route one event. Errors in here never reach the rest of the batch."""
        kind = classify(event)

        if kind is EventKind.RECEIPT:
            await self._handle_receipt(event)
            return

        if kind is EventKind.IGNORABLE:
            return

        if self._already_seen(event):
            logger.debug(f"[DEDUP] Skipping already-processed message {event.timestamp}")
            return

        if not self.triggers.is_triggered(event.text):
            return

        prompt = self.triggers.extract_prompt(event.text)
        if not prompt:
            logger.info("[SKIP] Empty prompt after removing trigger prefix")
            return

        if kind is EventKind.REFLECTED:
            await self._handle_reflected(event, prompt)
        else:
            await self._handle_received(event, prompt)

    async def _handle_receipt(self, event: IncomingEvent):
        """A delivery receipt may name the recipient of a pending prompt."""
        if not event.source:
            logger.debug("[RECEIPT] No source, ignoring")
            return

        entry = self.pending.take_match(event.receipt_timestamps)
        if entry is None:
            logger.debug(f"[RECEIPT] from {event.source}: nothing pending for {list(event.receipt_timestamps)}")
            return

        logger.info(f"[RECEIPT] {event.source} confirmed {entry.timestamp} - answering pending prompt")
        await self._respond(
            entry.prompt,
            Recipient.individual(event.source),
            quote_timestamp=entry.timestamp,
            quote_author=event.source,
        )

    async def _handle_reflected(self, event: IncomingEvent, prompt: str):
        """The operator triggered the agent from a linked device."""
        if event.group_id:
            logger.info(f"[TRIGGERED] own message in group {event.group_id[:20]}...")
            await self._respond(
                prompt,
                Recipient.group(event.group_id),
                quote_timestamp=event.timestamp,
                quote_author=event.source,
            )
            return

        if event.timestamp is None:
            logger.warning("[PENDING] Own DM has no timestamp, cannot correlate")
            return

        # 1:1 chat: the echo does not tell us who it went to, wait for the receipt
        logger.info(f"[PENDING] Own DM trigger at {event.timestamp}, waiting for delivery receipt")
        self.pending.put(event.timestamp, prompt)

    async def _handle_received(self, event: IncomingEvent, prompt: str):
        """Someone else triggered the agent; we know where to reply."""
        recipient = event.reply_recipient()
        if recipient is None:
            logger.warning("[SKIP] No recipient found for received message")
            return

        logger.info(f"[TRIGGERED] message from {event.source} -> {recipient}")
        await self._respond(
            prompt,
            recipient,
            quote_timestamp=event.timestamp,
            quote_author=event.source,
        )

    async def _respond(
        self,
        prompt: str,
        recipient: Recipient,
        quote_timestamp: Optional[int] = None,
        quote_author: Optional[str] = None
    ) -> bool:
        """Ask the agent and deliver whatever comes back. Returns True if sent."""
        reply = await self._ask_agent(prompt)
        try:
            await self.transport.send_message(recipient, reply, quote_timestamp, quote_author)
        except TransportPushFailure as e:
            logger.error(f"[-> SIGNAL FAILED] {e}")
            return False
        logger.info(f"Sent reply to {recipient}")
        return True

    async def _ask_agent(self, prompt: str) -> str:
        """Completion call; any failure becomes the apology text."""
        try:
            return await self.completion.complete_async(prompt)
        except CompletionError as e:
            logger.error(f"[AGENT] {type(e).__name__}: {e}")
            return APOLOGY

    def _already_seen(self, event: IncomingEvent) -> bool:
        """Remember (source, timestamp) of message events; True on a repeat."""
        if event.timestamp is None:
            return False
        key = (event.source, event.timestamp)
        if key in self._seen:
            return True
        self._seen[key] = None
        if len(self._seen) > SEEN_MAX:
            self._seen = dict.fromkeys(list(self._seen)[-SEEN_KEEP:])
        return False


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """
    Main entry point with graceful shutdown handling.

    - First SIGINT/SIGTERM: finish the in-flight message, then stop
    - Second signal or grace timeout: forces immediate exit
    """
    try:
        config = load_settings()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    bridge = Bridge(config)
    grace = config['shutdown_grace']

    # Track shutdown state
    shutting_down = False
    shutdown_timer = None
    loop = None

    def force_exit():
        """Force exit - called by timer or second interrupt."""
        logger.warning("Forcing exit")
        os._exit(1)

    def signal_handler(signum, frame):
        nonlocal shutting_down, shutdown_timer

        if shutting_down:
            logger.warning("Second interrupt - forcing immediate exit")
            force_exit()

        shutting_down = True
        logger.info(f"Shutting down after the current message (again to force, auto-exit in {grace:.0f}s)...")

        shutdown_timer = threading.Timer(grace, force_exit)
        shutdown_timer.daemon = True
        shutdown_timer.start()

        if loop is not None:
            loop.call_soon_threadsafe(bridge.request_shutdown)

    async def runner():
        nonlocal loop
        loop = asyncio.get_running_loop()
        if shutting_down:
            bridge.request_shutdown()
        await bridge.run()

    # Installed before asyncio.run() so asyncio does not claim SIGINT
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(runner())
    finally:
        if shutdown_timer:
            shutdown_timer.cancel()


if __name__ == "__main__":
    main()
