"""
Domain types and broker/clock protocols.
"""
