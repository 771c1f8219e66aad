"""
TaskTrack Backend Core

This package holds the request-facing infrastructure shared by the TaskTrack
HTTP service:

1. A distributed TTL cache layer backed by Redis
2. A distributed fixed-window rate limiter with overflow blocking
3. A request gate that applies per-operation rate limit policies
"""

__version__ = "0.1.0"
