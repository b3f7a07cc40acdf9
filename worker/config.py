"""
Worker configuration for Cohort distributed clustering.

Defines all configuration parameters for worker processes.
"""

import socket
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import json


def get_hostname() -> str:
    """
    Get short hostname.

    Returns:
        Hostname without domain
    """
    return socket.gethostname().split(".")[0]


@dataclass
class WorkerConfig:
    """
    Configuration for a Cohort worker process.

    A worker needs the coordinator's address, the shared checkpoint path and
    a local copy of the same data set the coordinator is clustering.
    """

    # Identity
    worker_id: str = field(
        default_factory=lambda: f"worker_{uuid.uuid4().hex[:8]}"
    )
    hostname: str = field(default_factory=get_hostname)

    # Coordinator connection
    coordinator_host: str = "localhost"
    coordinator_port: int = 60000
    connect_timeout: float = 30.0  # seconds
    io_timeout: Optional[float] = None  # None: block until the coordinator speaks

    # Shared filesystem
    checkpoint_path: Optional[str] = None
    data_path: Optional[str] = None

    # Resync
    resync_timeout: float = 120.0  # bound on shared filesystem propagation
    resync_poll_interval: float = 1.0  # seconds between checkpoint polls

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate settings."""
        if not 0 < self.coordinator_port < 65536:
            raise ValueError(f"Invalid coordinator port: {self.coordinator_port}")
        if self.resync_timeout <= 0 or self.resync_poll_interval <= 0:
            raise ValueError("Resync timeout and poll interval must be positive")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            'worker_id': self.worker_id,
            'hostname': self.hostname,
            'coordinator_host': self.coordinator_host,
            'coordinator_port': self.coordinator_port,
            'connect_timeout': self.connect_timeout,
            'io_timeout': self.io_timeout,
            'checkpoint_path': self.checkpoint_path,
            'data_path': self.data_path,
            'resync_timeout': self.resync_timeout,
            'resync_poll_interval': self.resync_poll_interval,
            'log_level': self.log_level,
            'log_file': self.log_file,
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'WorkerConfig':
        """
        Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            WorkerConfig instance
        """
        return cls(**config_dict)

    @classmethod
    def from_json_file(cls, path: str) -> 'WorkerConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            WorkerConfig instance
        """
        with open(path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    def to_json_file(self, path: str):
        """
        Save config to JSON file.

        Args:
            path: Path to save JSON config
        """
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WorkerConfig(worker_id='{self.worker_id}', "
            f"coordinator='{self.coordinator_host}:{self.coordinator_port}', "
            f"checkpoint='{self.checkpoint_path}')"
        )
