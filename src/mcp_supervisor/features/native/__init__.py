"""
Serveurs MCP natifs fournis avec le superviseur.
"""

from .web_fetch import WEB_FETCH_NATIVE_TYPE, WebFetchNativeServer, html_to_text, is_domain_allowed

__all__ = [
    "WEB_FETCH_NATIVE_TYPE",
    "WebFetchNativeServer",
    "html_to_text",
    "is_domain_allowed",
]
