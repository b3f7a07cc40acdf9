"""
Wire protocol between the clustering coordinator and its workers.

Strict request/reply over one TCP connection, coordinator speaking first:

| Code | Command  | coordinator -> worker        | worker -> coordinator         |
|------|----------|------------------------------|-------------------------------|
| 1    | resync   | uint64 size, float64 mtime   | (nothing)                     |
| 2    | estimate | int32 unit                   | tensor (clusters, rows)       |
| 3    | maximize | int32 unit, tensor (N,)      | float32 change, uint32 count, |
|      |          |                              | count x tensor                |

Fixed fields are little-endian. Tensor frames are described in
communication.serialization.
"""

import asyncio
import struct
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

import torch

from communication.serialization import (
    NDIM_FORMAT,
    data_size,
    deserialize_tensor,
    serialize_tensor,
    serialize_tensors,
    unpack_shape,
)
from core.checkpoint import CheckpointRecord


COMMAND_FORMAT = struct.Struct("<i")
UNIT_FORMAT = struct.Struct("<i")
RESYNC_FORMAT = struct.Struct("<Qd")
CHANGE_FORMAT = struct.Struct("<f")
COUNT_FORMAT = struct.Struct("<I")

# Sanity bounds on incoming frames
MAX_DIMS = 8
MAX_ELEMENTS = 1 << 30
MAX_PARAMS = 64


class Command(IntEnum):
    """Protocol command codes."""
    RESYNC = 1
    ESTIMATE = 2
    MAXIMIZE = 3


class ProtocolError(ValueError):
    """Malformed or unexpected data on the wire."""


async def read_exactly(
    reader: asyncio.StreamReader,
    count: int,
    timeout: Optional[float] = None
) -> bytes:
    """
    Read exactly count bytes.

    Raises:
        asyncio.IncompleteReadError: If the peer closes first
        asyncio.TimeoutError: If timeout elapses first
    """
    if timeout is None:
        return await reader.readexactly(count)
    return await asyncio.wait_for(reader.readexactly(count), timeout)


async def send(
    writer: asyncio.StreamWriter,
    data: bytes,
    timeout: Optional[float] = None
):
    """Write data and wait for the transport to drain."""
    writer.write(data)
    if timeout is None:
        await writer.drain()
    else:
        await asyncio.wait_for(writer.drain(), timeout)


# Encoders

def encode_resync(record: CheckpointRecord) -> bytes:
    return COMMAND_FORMAT.pack(Command.RESYNC) + RESYNC_FORMAT.pack(record.size, record.mtime)


def encode_estimate(unit: int) -> bytes:
    return COMMAND_FORMAT.pack(Command.ESTIMATE) + UNIT_FORMAT.pack(unit)


def encode_maximize(unit: int, member_row: torch.Tensor) -> bytes:
    return (
        COMMAND_FORMAT.pack(Command.MAXIMIZE)
        + UNIT_FORMAT.pack(unit)
        + serialize_tensor(member_row)
    )


def encode_estimate_reply(block: torch.Tensor) -> bytes:
    return serialize_tensor(block)


def encode_maximize_reply(change: float, params: Sequence[torch.Tensor]) -> bytes:
    return (
        CHANGE_FORMAT.pack(change)
        + COUNT_FORMAT.pack(len(params))
        + serialize_tensors(params)
    )


# Decoders

async def read_command(
    reader: asyncio.StreamReader,
    timeout: Optional[float] = None
) -> Optional[Command]:
    """
    Read the next command code.

    Returns:
        The command, or None if the peer closed cleanly between commands

    Raises:
        ProtocolError: On an unrecognized command code
    """
    try:
        data = await read_exactly(reader, COMMAND_FORMAT.size, timeout)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise

    (code,) = COMMAND_FORMAT.unpack(data)
    try:
        return Command(code)
    except ValueError:
        raise ProtocolError(f"Unrecognized command: {code}") from None


async def read_resync(
    reader: asyncio.StreamReader,
    timeout: Optional[float] = None
) -> CheckpointRecord:
    """Read the payload of a resync command."""
    data = await read_exactly(reader, RESYNC_FORMAT.size, timeout)
    size, mtime = RESYNC_FORMAT.unpack(data)
    return CheckpointRecord(size=size, mtime=mtime)


async def read_unit(
    reader: asyncio.StreamReader,
    timeout: Optional[float] = None
) -> int:
    """Read a work unit identifier."""
    data = await read_exactly(reader, UNIT_FORMAT.size, timeout)
    (unit,) = UNIT_FORMAT.unpack(data)
    if unit < 0:
        raise ProtocolError(f"Negative work unit: {unit}")
    return unit


async def read_tensor(
    reader: asyncio.StreamReader,
    expected_shape: Optional[Tuple[int, ...]] = None,
    timeout: Optional[float] = None
) -> torch.Tensor:
    """
    Read one tensor frame.

    Args:
        reader: Stream to read from
        expected_shape: If given, the frame must have exactly this shape
        timeout: Per-read timeout in seconds

    Raises:
        ProtocolError: On an implausible header or unexpected shape
    """
    (ndim,) = NDIM_FORMAT.unpack(await read_exactly(reader, NDIM_FORMAT.size, timeout))
    if ndim > MAX_DIMS:
        raise ProtocolError(f"Tensor has too many dimensions: {ndim}")

    shape = unpack_shape(ndim, await read_exactly(reader, 4 * ndim, timeout))
    if expected_shape is not None and tuple(shape) != tuple(expected_shape):
        raise ProtocolError(
            f"Unexpected tensor shape {tuple(shape)}, expected {tuple(expected_shape)}"
        )

    nbytes = data_size(shape)
    if nbytes // 4 > MAX_ELEMENTS:
        raise ProtocolError(f"Tensor too large: {tuple(shape)}")

    data = await read_exactly(reader, nbytes, timeout)
    return deserialize_tensor(shape, data)


async def read_maximize_reply(
    reader: asyncio.StreamReader,
    timeout: Optional[float] = None
) -> Tuple[float, List[torch.Tensor]]:
    """Read the change metric and updated parameters of one cluster."""
    (change,) = CHANGE_FORMAT.unpack(await read_exactly(reader, CHANGE_FORMAT.size, timeout))
    (count,) = COUNT_FORMAT.unpack(await read_exactly(reader, COUNT_FORMAT.size, timeout))
    if count > MAX_PARAMS:
        raise ProtocolError(f"Too many parameter tensors: {count}")

    params = [await read_tensor(reader, timeout=timeout) for _ in range(count)]
    return change, params
