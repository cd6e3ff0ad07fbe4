"""
Proxy Package
=============

This package implements the catch-all proxy that forwards REST calls from
callers to the upstream API and relays the upstream's answer.

Main Components:
----------------
- gateway.py: ProxyGateway (forward) and write_response
- routes.py: FastAPI router with the /api/proxy/{path} endpoints

Security Features:
------------------
- Inbound header whitelist (If-Match, ConsistencyLevel)
- Caller credentials never reach the upstream
- Hop-by-hop response headers stripped

Usage:
------
    from gateway.app.proxy import proxy_router
    app.include_router(proxy_router, prefix="/api/proxy")
"""

from .gateway import ProxyGateway, write_response
from .routes import PROXY_PREFIX, proxy_router

__all__ = ["PROXY_PREFIX", "ProxyGateway", "proxy_router", "write_response"]
