"""
Dataset utilities for clustering.

Loads a data matrix of shape (N, D) from disk, or generates synthetic
Gaussian blobs for testing. The coordinator and every worker must load
the same rows in the same order, since work units address rows by index.
"""

from pathlib import Path
from typing import Optional, Sequence, Tuple, Union
import logging

import numpy as np
import torch

logger = logging.getLogger(__name__)


def load_dataset(path: Union[str, Path]) -> torch.Tensor:
    """
    Load a data matrix from disk.

    Supported formats:
    - .npy: numpy array
    - .pt / .pth: tensor saved with torch.save
    - anything else: text with one row per line, comma or whitespace separated

    Args:
        path: Path to the data file

    Returns:
        float32 tensor of shape (N, D)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the data is not two-dimensional
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".npy":
        data = torch.from_numpy(np.load(path))
    elif suffix in (".pt", ".pth"):
        data = torch.load(path)
    else:
        with open(path, 'r') as f:
            first_line = f.readline()
        delimiter = "," if "," in first_line else None
        data = torch.from_numpy(np.loadtxt(path, delimiter=delimiter, ndmin=2))

    data = data.float()
    if data.dim() == 1:
        data = data.unsqueeze(1)
    if data.dim() != 2:
        raise ValueError(f"Expected a 2-D data matrix, got shape {tuple(data.shape)}")

    logger.info(f"Loaded dataset {path}: {data.shape[0]} rows x {data.shape[1]} columns")
    return data.contiguous()


def make_blobs(
    num_rows: int,
    centers: Union[int, Sequence[Sequence[float]]] = 3,
    dim: int = 2,
    std: float = 1.0,
    spread: float = 10.0,
    seed: Optional[int] = 42
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Generate isotropic Gaussian blobs.

    Args:
        num_rows: Total number of rows
        centers: Number of blobs, or explicit blob centers
        dim: Dimensionality when centers is a count
        std: Standard deviation of each blob
        spread: Half-width of the box the random centers are drawn from
        seed: Random seed for reproducibility

    Returns:
        (data, labels) with shapes (num_rows, D) and (num_rows,)
    """
    generator = torch.Generator()
    if seed is not None:
        generator.manual_seed(seed)

    if isinstance(centers, int):
        center_tensor = (torch.rand(centers, dim, generator=generator) * 2 - 1) * spread
    else:
        center_tensor = torch.tensor(centers, dtype=torch.float32)

    num_centers = center_tensor.shape[0]
    labels = torch.arange(num_rows) % num_centers
    noise = torch.randn(num_rows, center_tensor.shape[1], generator=generator) * std
    data = center_tensor[labels] + noise

    return data.float(), labels


def save_dataset(data: torch.Tensor, path: Union[str, Path]):
    """
    Save a data matrix as .npy, .pt or text, chosen by suffix.

    Args:
        data: Tensor of shape (N, D)
        path: Destination path
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        np.save(path, data.cpu().numpy())
    elif suffix in (".pt", ".pth"):
        torch.save(data.cpu(), path)
    else:
        np.savetxt(path, data.cpu().numpy(), delimiter=",")
    logger.info(f"Saved dataset to {path}")
