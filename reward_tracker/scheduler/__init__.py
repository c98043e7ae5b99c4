"""
Periodic job scheduling.
"""
