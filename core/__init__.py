"""
Core clustering components shared by coordinator and workers.

Provides the clustering strategies, data set loading and the checkpoint
store used for worker resynchronization.
"""

__version__ = "0.1.0"
