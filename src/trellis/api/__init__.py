"""
HTTP API for Trellis.
"""
