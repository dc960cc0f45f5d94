"""flow-daemon: supervise per-project dashboard servers from one local daemon."""

__version__ = "0.3.0"
