"""
ui — FastAPI host serving one display engine per display route.
"""
