"""
output — Announcement scheduling, kiosk activation and speech/tone output.
"""
