"""
Business services: network clients, reconciler, reward backfill and APR.
"""
