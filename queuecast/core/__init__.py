"""
core — Constants, configuration, data models, logging and state machine base.
"""
