# Signal AI bridge
# Watches a Signal account for triggered messages and relays agent replies.

__version__ = "0.1.0"
