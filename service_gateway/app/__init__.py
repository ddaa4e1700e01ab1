"""
Gateway package for the ClawdBar access core.

The gateway owns admission control shared by every service:

- app.ratelimit: token bucket limiter, per action-class policies and the
  Redis bucket store.
"""
