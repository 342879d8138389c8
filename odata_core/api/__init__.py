"""
odata_core.api - Optional development gateway
=============================================

A FastAPI application exposing the execution core over HTTP. The gateway
is optional and only needed to run the core as a service.

Usage
-----
>>> from odata_core.api import create_app, ODataGateway
>>> app = create_app(ODataGateway(registry, store, config, tracker))
>>> # Or serve the seeded demo service: uvicorn odata_core.api:create_app --factory

Or run directly:
>>> python -m odata_core.api

"""

from odata_core.api.gateway import ODataGateway, create_app, default_gateway

__all__ = [
    "create_app",
    "default_gateway",
    "ODataGateway",
]
