from m3w_offline.utils.url_parser import MediaResource, MediaVariant, parse_media_url, resource_key
from m3w_offline.utils.cancellation import CancellationToken
from m3w_offline.utils.logging import setup_logging

__all__ = ["MediaResource", "MediaVariant", "parse_media_url", "resource_key", "CancellationToken", "setup_logging"]
