"""
Test suite for convergedb.
"""
