"""
network — Connectivity tracking and bounded exponential-backoff reconnects.
"""
