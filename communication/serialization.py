"""
Tensor serialization for the coordinator/worker wire protocol.

A tensor travels as a small frame:

    uint32 ndim | ndim x uint32 dims | float32 data (row-major)

All integers are little-endian. Only float32 is carried; other dtypes are
converted on the way out.
"""

import struct
from typing import Sequence, Tuple

import numpy as np
import torch


NDIM_FORMAT = struct.Struct("<I")
DIM_FORMAT = "<{}I"

# Wire element type
WIRE_DTYPE = np.dtype("<f4")


def serialize_tensor(tensor: torch.Tensor) -> bytes:
    """
    Convert a tensor to a wire frame.

    Args:
        tensor: Tensor of any shape

    Returns:
        Header followed by raw float32 data
    """
    # Ensure tensor is contiguous for efficient serialization
    tensor_np = tensor.detach().contiguous().cpu().numpy().astype(WIRE_DTYPE, copy=False)
    shape = tensor_np.shape
    header = NDIM_FORMAT.pack(len(shape)) + struct.pack(DIM_FORMAT.format(len(shape)), *shape)
    return header + tensor_np.tobytes()


def serialize_tensors(tensors: Sequence[torch.Tensor]) -> bytes:
    """Concatenate frames for a sequence of tensors."""
    return b"".join(serialize_tensor(t) for t in tensors)


def unpack_shape(ndim: int, dims_bytes: bytes) -> Tuple[int, ...]:
    """Decode the dims part of a frame header."""
    return struct.unpack(DIM_FORMAT.format(ndim), dims_bytes)


def data_size(shape: Sequence[int]) -> int:
    """Number of payload bytes for a tensor of the given shape."""
    return int(np.prod(shape, dtype=np.int64)) * WIRE_DTYPE.itemsize


def deserialize_tensor(shape: Sequence[int], data: bytes) -> torch.Tensor:
    """
    Rebuild a float32 tensor from frame payload.

    Args:
        shape: Shape from the frame header
        data: Raw payload bytes

    Returns:
        Writable float32 tensor
    """
    tensor_np = np.frombuffer(data, dtype=WIRE_DTYPE).reshape(tuple(shape))
    # Copy to make writable before converting to PyTorch
    # frombuffer creates read-only arrays, causing warnings
    return torch.from_numpy(tensor_np.astype(np.float32, copy=True))

