"""
cache — Best-effort local snapshot cache used while the live feed is down.
"""
