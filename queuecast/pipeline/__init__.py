"""
pipeline — Per-display engine wiring feeds, cache, connectivity and audio.
"""
