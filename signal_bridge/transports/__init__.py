# Messaging transports
# The bridge only depends on BaseTransport; SignalCLITransport is the real one.

from .base import BaseTransport
from .signal_cli import SignalCLITransport

__all__ = ['BaseTransport', 'SignalCLITransport']
