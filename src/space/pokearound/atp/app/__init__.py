"""
Application Layer

This package runs the operational side of the service with aiohttp: health checks,
the link sync worker and its internal API.

Key Components:
- server.py: Web application setup, middleware and lifecycle
- config.py: Settings and AppKeys
- tasks.py: Link sync worker and background tasks
- metrics.py: Metrics client abstraction
- handlers/: Internal HTTP endpoints
- util/: Command line utilities
"""
