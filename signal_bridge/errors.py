"""
Error taxonomy for the bridge.

Per-message errors (pull, push, completion) are caught by the dispatch loop
and never escape a single event. ConfigurationError is the only fatal one.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BridgeError):
    """Settings are missing or malformed. Raised at startup only."""


class TransportPullFailure(BridgeError):
    """signal-cli receive failed (timeout, bad exit, could not launch)."""


class TransportPushFailure(BridgeError):
    """signal-cli send failed. Logged and dropped, never retried."""


class CompletionError(BridgeError):
    """The completion service did not produce a usable reply."""


class CompletionTimeout(CompletionError):
    pass


class CompletionHTTPError(CompletionError):
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class CompletionDecodeError(CompletionError):
    pass
