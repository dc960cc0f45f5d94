"""Allow ``python -m flow_daemon``."""

from flow_daemon.cli import main

main()
