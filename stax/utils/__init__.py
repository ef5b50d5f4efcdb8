"""
Helpers for credentials, transports, the local environment and payload parsing
"""
