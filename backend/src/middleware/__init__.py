"""
Middleware package for the vault HTTP surface.

Provides:
- RateLimiter: per-caller fixed window limits with in-memory or Redis counters
- CORSMiddleware: preflight handling and permissive CORS headers
- VaultAccessMiddleware: access gate and rate limiter ahead of body parsing
"""
