"""
fleetsync
=========

Reconciles the fleet dashboard's JSON data store into MongoDB.
"""

__version__ = "1.0.0"
