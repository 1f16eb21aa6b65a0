"""tgctl - command-line client for talkgate."""

__version__ = "0.1.0"
