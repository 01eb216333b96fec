"""
input — Live feed subscriptions and normalised platform events.
"""
