"""
Completion Client - POSTs a prompt to the agent service and returns its reply.

The agent exposes one endpoint:

    POST {agent_url}/signal-bot   {"prompt": "..."}  ->  {"response": "..."}

Every failure is raised as a CompletionError subclass so the dispatcher can
turn it into the apology message.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

import requests

from .errors import CompletionDecodeError, CompletionHTTPError, CompletionTimeout

logger = logging.getLogger(__name__)

# Blocking HTTP calls run here so they never stall the event loop
_completion_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="completion")

DEFAULT_TIMEOUT = 30.0
ENDPOINT_PATH = "/signal-bot"


class CompletionClient:
    """Thin client for the agent's /signal-bot endpoint."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url
        self.url = base_url.rstrip('/') + ENDPOINT_PATH
        self.timeout = timeout

    def complete(self, prompt: str) -> str:
        """
        Ask the agent for a reply.

        Raises:
            CompletionTimeout: no answer within `timeout` seconds
            CompletionHTTPError: connection failure or non-200 status
            CompletionDecodeError: body is not JSON or has no usable "response"
        """
        logger.info(f"[AGENT] Calling {self.url} ({len(prompt)} chars)")

        try:
            resp = requests.post(
                self.url,
                json={'prompt': prompt},
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise CompletionTimeout(f"Agent did not answer within {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise CompletionHTTPError(f"Failed to call agent: {e}") from e

        if resp.status_code != 200:
            raise CompletionHTTPError(
                f"Agent returned status {resp.status_code}: {resp.text[:100]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise CompletionDecodeError(f"Agent response is not JSON: {resp.text[:100]}") from e

        reply = data.get('response') if isinstance(data, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            raise CompletionDecodeError(f"Agent response has no text: {str(data)[:100]}")

        logger.info(f"[AGENT] Reply received ({len(reply)} chars)")
        return reply

    async def complete_async(self, prompt: str) -> str:
        """complete() on the completion thread pool (non-blocking for the loop)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_completion_executor, self.complete, prompt)

    def __repr__(self):
        return f"<CompletionClient url={self.url} timeout={self.timeout}>"
