"""
Taolu Tracker HTTP application.
"""
