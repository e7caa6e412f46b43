"""
signal-cli transport

Receives with `signal-cli --output json receive` (one JSON envelope per line)
and sends with `signal-cli send`, body on stdin.
"""

import json
import logging
import re
import subprocess
from typing import Optional

from ..errors import TransportPullFailure, TransportPushFailure
from ..events import IncomingEvent, Recipient, describe
from ..process import run_subprocess_async
from .base import BaseTransport

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def strip_markdown(text: str) -> str:
    """
    Remove markdown formatting for plain text output.

    Emphasis markers only count when they hug non-space text and are not
    glued to a word, so `2*3*4`, `x**2` and `a * b` pass through untouched.
    """
    # Bold: **text** or __text__
    text = re.sub(r'(?<![\w*])\*\*(?=\S)(.+?)(?<=\S)\*\*(?![\w*])', r'\1', text)
    text = re.sub(r'(?<!\w)__(?=\S)(.+?)(?<=\S)__(?!\w)', r'\1', text)
    # Italic: *text* or _text_
    text = re.sub(r'(?<![\w*])\*(?=\S)(.+?)(?<=\S)\*(?![\w*])', r'\1', text)
    text = re.sub(r'(?<!\w)_(?=\S)(.+?)(?<=\S)_(?!\w)', r'\1', text)
    # Code: `text`
    text = re.sub(r'`(.+?)`', r'\1', text)
    # Headers: ### text
    text = re.sub(r'^#{1,6}\s+', '', text, flags=re.MULTILINE)
    return text


def utf16_length(text: str) -> int:
    """Signal measures style ranges in UTF-16 code units."""
    return len(text.encode('utf-16-le')) // 2


class SignalCLITransport(BaseTransport):
    """Native signal-cli client."""

    name = "signal-cli"

    def __init__(self, config: dict):
        super().__init__(config)
        signal_config = config.get('signal', {})
        self.account: Optional[str] = signal_config.get('account')
        self.italic_replies = signal_config.get('italic_replies', True)
        self.signal_cli_path = config.get('paths', {}).get('signal_cli', 'signal-cli')
        self.receive_timeout = config.get('receive_timeout', 15)
        self.send_timeout = config.get('send_timeout', 30)

    def _base_cmd(self) -> list[str]:
        cmd = [self.signal_cli_path]
        if self.account:
            cmd.extend(["-u", self.account])
        return cmd

    # =========================================================================
    # Pull
    # =========================================================================

    def build_receive_command(self) -> list[str]:
        return self._base_cmd() + [
            "--output", "json", "receive", "--ignore-attachments", "--ignore-stories"
        ]

    async def receive_events(self) -> list[IncomingEvent]:
        """Poll once. Failures raise TransportPullFailure; the caller retries next tick."""
        cmd = self.build_receive_command()
        logger.debug("[POLL] Starting receive...")

        try:
            returncode, stdout, stderr = await run_subprocess_async(cmd, timeout=self.receive_timeout)
        except subprocess.TimeoutExpired as e:
            raise TransportPullFailure(f"signal-cli receive timed out after {self.receive_timeout}s") from e
        except OSError as e:
            raise TransportPullFailure(f"Could not run {self.signal_cli_path}: {e}") from e

        if stderr:
            logger.warning(f"[POLL] signal-cli stderr: {stderr[:200]}")

        if returncode != 0:
            raise TransportPullFailure(f"signal-cli receive returned {returncode}")

        events = self.parse_output(stdout)
        logger.debug(f"[POLL] Parsed {len(events)} events")
        return events

    def parse_output(self, output: str) -> list[IncomingEvent]:
        """Decode signal-cli JSON lines. Bad lines are logged and skipped."""
        events = []
        raw_output = output.strip()
        if raw_output:
            logger.debug(f"[POLL] Received {len(raw_output)} bytes")

        for line in raw_output.split('\n'):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"[POLL] JSON decode error: {e} - line: {line[:100]}")
                continue
            if not isinstance(raw, dict):
                logger.warning(f"[POLL] Unexpected JSON shape: {line[:100]}")
                continue

            try:
                event = IncomingEvent.from_envelope(raw)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"[POLL] Unreadable envelope: {e} - line: {line[:100]}")
                continue
            if event.text:
                logger.info(f"[RAW MSG] {describe(event)}")
            else:
                logger.debug(f"[RAW] {describe(event)}")
            events.append(event)
        return events

    # =========================================================================
    # Push
    # =========================================================================

    def prepare_text(self, text: str) -> str:
        text = strip_markdown(text)
        if len(text) > MAX_MESSAGE_LENGTH:
            text = text[:MAX_MESSAGE_LENGTH - 100] + "\n\n[truncated]"
        return text

    def build_send_command(
        self,
        recipient: Recipient,
        text: str,
        quote_timestamp: Optional[int] = None,
        quote_author: Optional[str] = None
    ) -> list[str]:
        """
        Build the send command for `text` (already prepared).

        Groups use `-g GROUP_ID`; an individual recipient must be the last
        positional argument, after every option.
        """
        cmd = self._base_cmd() + ["send"]
        if recipient.is_group:
            cmd.extend(["-g", recipient.identifier])
        cmd.append("--message-from-stdin")

        if self.italic_replies and text:
            cmd.extend(["--text-style", f"0:{utf16_length(text)}:ITALIC"])

        if quote_timestamp and quote_author:
            cmd.extend(["--quote-timestamp", str(quote_timestamp)])
            cmd.extend(["--quote-author", quote_author])

        if not recipient.is_group:
            cmd.append(recipient.identifier)
        return cmd

    async def send_message(
        self,
        recipient: Recipient,
        text: str,
        quote_timestamp: Optional[int] = None,
        quote_author: Optional[str] = None
    ):
        """Send `text` to `recipient` via stdin. Raises TransportPushFailure."""
        text = self.prepare_text(text)
        cmd = self.build_send_command(recipient, text, quote_timestamp, quote_author)
        logger.debug(f"[-> SIGNAL] Executing: {' '.join(cmd)}")

        try:
            returncode, stdout, stderr = await run_subprocess_async(
                cmd, timeout=self.send_timeout, input_data=text.encode('utf-8')
            )
        except subprocess.TimeoutExpired as e:
            raise TransportPushFailure(f"signal-cli send to {recipient} timed out") from e
        except OSError as e:
            raise TransportPushFailure(f"Could not run {self.signal_cli_path}: {e}") from e

        if returncode != 0:
            raise TransportPushFailure(
                f"signal-cli send to {recipient} returned {returncode}: {stderr[:200]}"
            )

        logger.info(f"[-> SIGNAL] {recipient}\n{text}")

    def __repr__(self):
        return f"<SignalCLITransport path={self.signal_cli_path} account={self.account or 'default'}>"
