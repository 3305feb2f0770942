"""
Utilities package for modelbridge: configuration, networking, streaming and lifecycle helpers.
"""
