"""
Common Infrastructure

Shared building blocks for the TaskTrack service: configuration, logging,
error handling, the Redis backend adapter, the cache layer and the rate limiter.
"""
