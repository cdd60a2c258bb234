"""
Anchor Application Layer

Wires the AT Protocol core into something runnable: configuration, metrics,
background refresh and the ``anchor`` command line.

Key Components:
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics client abstraction (Telegraf/StatsD or no-op)
- tasks.py: Background task that refreshes the session ahead of expiry
- context.py: Composition root building every component from one Settings
- cli.py: Logging setup and the ``anchor`` entry point
"""
