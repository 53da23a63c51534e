"""
Client Portal
Blueprint registry.
"""
