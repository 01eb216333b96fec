"""
QueueCast — Real-time hospital queue display and announcement engine.

Raw queue records → derived "now serving" view → offline cache fallback →
chime + speech announcements, gated by kiosk activation.
"""

__version__ = "1.0.0"
__author__ = "QueueCast Team"
