"""
atmd Application Layer

The aiohttp web application exposing the account orchestrator over HTTP.

Key Components:
- cli.py: Entry point (`atmd` console script) and logging configuration
- server.py: Application factory, resource lifecycle and middleware
- config.py: Settings and the typed AppKeys used for dependency injection
- metrics.py: Metrics client abstraction over aio-statsd
- handlers/: Request handlers

Middleware:
- Statsd middleware for request timing and counts
- Sentry middleware for error reporting
"""
