"""
Coordinator configuration for Cohort distributed clustering.

The coordinator owns every decision about the computation: which strategy
runs, how rows are blocked into work units, where checkpoints go and how
workers reach it.
"""

from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any
import json
import logging

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorConfig:
    """
    Configuration for the coordinator process.

    Network settings, scheduling, checkpointing and the clustering strategy.
    """

    # Listener
    host: str = "0.0.0.0"
    port: int = 60000  # 0: any free port
    last_port: Optional[int] = None  # None: only try `port`
    scan_timeout: float = 30.0  # seconds to keep rescanning busy ports
    rescan_interval: float = 1.0  # pause between scans of the whole range
    accept_wake_interval: float = 10.0  # max wait before rechecking the stop flag

    # Sessions
    io_timeout: float = 60.0  # per read/write on a worker connection
    idle_interval: float = 1.0  # max idle wait when no unit is claimable
    resync_timeout: float = 120.0  # extra reply time while a worker loads a checkpoint

    # Computation
    block_size: int = 1000  # rows per estimate work unit
    strategy: str = "gaussian_mixture"  # "gaussian_mixture", "kmeans"
    strategy_options: Dict[str, Any] = field(default_factory=dict)
    data_path: Optional[str] = None
    max_iterations: int = 0  # 0: iterate until converged

    # Checkpointing
    checkpoint_path: Optional[str] = None  # None: write to standard output

    # Status API
    status_host: str = "0.0.0.0"
    status_port: Optional[int] = None  # None: disabled

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate settings."""
        if self.block_size <= 0:
            raise ValueError(f"block_size must be positive, got {self.block_size}")
        if self.last_port is not None and self.last_port < self.port:
            raise ValueError(f"last_port {self.last_port} is below port {self.port}")
        if not 0 <= self.port < 65536:
            raise ValueError(f"Invalid port: {self.port}")
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.io_timeout <= 0 or self.accept_wake_interval <= 0 or self.idle_interval <= 0:
            raise ValueError("Timeouts and intervals must be positive")
        if self.resync_timeout < 0:
            raise ValueError(f"resync_timeout must be >= 0, got {self.resync_timeout}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CoordinatorConfig':
        """Create from dictionary."""
        return cls(**data)

    @classmethod
    def from_json_file(cls, path: str) -> 'CoordinatorConfig':
        """Load from JSON file."""
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    def to_json_file(self, path: str):
        """Save to JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return (
            f"CoordinatorConfig(port={self.port}, last_port={self.last_port}, "
            f"strategy='{self.strategy}', block_size={self.block_size}, "
            f"checkpoint='{self.checkpoint_path}')"
        )
