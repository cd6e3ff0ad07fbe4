"""
Graph Proxy Gateway
===================

FastAPI service that forwards arbitrary REST calls received on
/api/proxy/{path} to one upstream API and relays the upstream's response.

Subpackages:
    - proxy:    catch-all routes, ProxyGateway and response writing
    - upstream: credentialed httpx client and MSAL token auth
"""
