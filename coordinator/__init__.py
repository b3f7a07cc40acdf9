"""
Coordinator module for Cohort distributed clustering.

The coordinator is responsible for:
- Binding the worker listener and accepting connections
- Handing out estimate and maximize work units
- Requeueing work lost with a failed worker
- Checkpointing the model for worker resynchronization
- Driving the iteration to convergence
"""

__version__ = "0.1.0"
