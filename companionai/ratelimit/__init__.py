"""Request admission control.

Module split:
    - `limiter`: fixed-window and sliding-window limiters keyed by identifier.
"""
