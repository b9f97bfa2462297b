"""Chrome DevTools Protocol binding for the content session."""

from .connection import CdpConnection, http_get_json
from .pump import CdpEventPump
from .surface import CdpSurface, CdpSurfaceFactory, cookie_params

__all__ = ["CdpConnection", "CdpEventPump", "CdpSurface", "CdpSurfaceFactory", "cookie_params", "http_get_json"]
