"""
Worker module for Cohort distributed clustering.

Workers are the compute processes that:
- Resynchronize their model from the shared checkpoint
- Estimate cluster membership for blocks of rows
- Re-estimate individual clusters from membership rows
"""

__version__ = "0.1.0"
