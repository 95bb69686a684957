"""Resolve a ``module:factory`` reference into a :class:`GatewayBundle`."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import TYPE_CHECKING

from p2p_relay.gateway.base import GatewayBundle
from p2p_relay.gateway.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from p2p_relay.config import Settings

GatewayFactory = Callable[["Settings", RateLimiter], GatewayBundle]


def load_gateway_bundle(target: str, *, settings: Settings, limiter: RateLimiter) -> GatewayBundle:
    """Import ``target`` and call it with the settings and the shared limiter."""

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Gateway factory must look like 'package.module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{module_name} has no callable {attr!r}")
    bundle = factory(settings, limiter)
    if not isinstance(bundle, GatewayBundle):
        raise TypeError(f"{target} returned {type(bundle).__name__}, expected GatewayBundle")
    return bundle
