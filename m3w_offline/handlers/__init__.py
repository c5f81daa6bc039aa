from m3w_offline.handlers.media import WORKER_KEY, routes

__all__ = ["WORKER_KEY", "routes"]
