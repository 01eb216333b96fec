"""
display — Pure derivation of "now serving / up next" views from queue records.
"""
