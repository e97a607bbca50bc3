"""
Firmware flash orchestration.

FlashOrchestrator streams a FirmwareImage to a device block by block. How the
image is cut into blocks is delegated to a BlockEncodingStrategy:

- RawChunked: plain slices written as-is, with a short pause between
  chunks so a slow receiver can drain its buffer
- UF2Framed: slices wrapped in 512-byte UF2 blocks

Phases:
    IDLE -> PREPARING -> [ENTERING_BOOTLOADER] -> STREAMING
         -> [EXITING_BOOTLOADER] -> COMPLETED
    (any phase -> FAILED)

Every block write emits a FlashEvent; the terminal COMPLETED / FAILED event
is emitted exactly once per flash() call.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple, Union

from .core.results import FlashResult
from .firmware import FirmwareImage
from .protocol.bootloader import BootloaderHandshake, BootloaderHandshakeFailed
from .protocol.transport import ConnectionState, Transport, TransportError
from .protocol.uf2 import (
    UF2_DEFAULT_PAYLOAD,
    UF2_PAYLOAD_CAPACITY,
    BlockOverflow,
    encode_block,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64
DEFAULT_INTER_CHUNK_DELAY = 0.05
DEFAULT_DATA_PER_BLOCK = UF2_DEFAULT_PAYLOAD

CANCELLED = "Cancelled"


class FlashCancelled(Exception):
    """Raised internally when cancel() is observed between blocks."""


class FlashPhase(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    ENTERING_BOOTLOADER = "entering_bootloader"
    STREAMING = "streaming"
    EXITING_BOOTLOADER = "exiting_bootloader"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class FlashEvent:
    """Progress notification delivered to the caller's sink."""

    phase: FlashPhase
    block_index: int = 0
    total_blocks: int = 0
    percent: int = 0
    reason: str = ""

    @property
    def terminal(self) -> bool:
        return self.phase in (FlashPhase.COMPLETED, FlashPhase.FAILED)


@dataclass
class FlashSession:
    """Run-scoped state of one flash operation."""

    total_blocks: int = 0
    total_bytes: int = 0
    block_index: int = 0
    bytes_transferred: int = 0
    phase: FlashPhase = FlashPhase.IDLE
    failed_block: Optional[int] = None
    last_error: Optional[BaseException] = None

    @property
    def percent(self) -> int:
        return percent_of(self.block_index, self.total_blocks)


def percent_of(done: int, total: int) -> int:
    """Integer percentage, rounded half up (1/3 -> 33, 2/3 -> 67)."""
    if total <= 0:
        return 0
    return (200 * done + total) // (2 * total)


def block_count(length: int, size: int) -> int:
    """ceil(length / size); a non-empty image always yields at least one block."""
    if size <= 0:
        raise ValueError(f"block size must be positive, got {size}")
    return (length + size - 1) // size


def slice_image(data: bytes, size: int, pad: bool = False) -> List[bytes]:
    """
    Split data into size-byte pieces in order.

    Args:
        data: Bytes to split
        size: Piece size
        pad: Right-pad the final piece with zeroes to full size

    Returns:
        ceil(len(data) / size) pieces; the last one is never dropped
    """
    pieces = []
    for offset in range(0, len(data), size):
        piece = data[offset:offset + size]
        if pad and len(piece) < size:
            piece = piece + bytes(size - len(piece))
        pieces.append(piece)
    return pieces


class BlockEncodingStrategy:
    """Turns a FirmwareImage into the ordered frames written to the device."""

    name = "base"
    inter_block_delay = 0.0

    def block_count(self, image: FirmwareImage) -> int:
        raise NotImplementedError

    def iter_blocks(self, image: FirmwareImage) -> Iterator[Tuple[bytes, int]]:
        """Yield (frame_bytes, image_bytes_carried) in block order."""
        raise NotImplementedError


class RawChunked(BlockEncodingStrategy):
    """Write the image verbatim in chunk_size pieces."""

    name = "raw"

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.inter_block_delay = inter_chunk_delay

    def block_count(self, image: FirmwareImage) -> int:
        return block_count(len(image.data), self.chunk_size)

    def iter_blocks(self, image: FirmwareImage) -> Iterator[Tuple[bytes, int]]:
        for chunk in slice_image(image.data, self.chunk_size):
            yield chunk, len(chunk)

    def __repr__(self) -> str:
        return f"RawChunked(chunk_size={self.chunk_size})"


class UF2Framed(BlockEncodingStrategy):
    """
    Wrap data_per_block-byte slices into UF2 blocks.

    The last slice is zero-padded to data_per_block, so every block declares
    the same payload size. Target addresses start at image.load_address.
    """

    name = "uf2"

    def __init__(
        self,
        data_per_block: int = DEFAULT_DATA_PER_BLOCK,
        family_id: Optional[int] = None,
    ):
        if not 0 < data_per_block <= UF2_PAYLOAD_CAPACITY:
            raise BlockOverflow(
                f"data_per_block must be 1..{UF2_PAYLOAD_CAPACITY}, got {data_per_block}"
            )
        self.data_per_block = data_per_block
        self.family_id = family_id

    def block_count(self, image: FirmwareImage) -> int:
        return block_count(len(image.data), self.data_per_block)

    def iter_blocks(self, image: FirmwareImage) -> Iterator[Tuple[bytes, int]]:
        data = image.data
        total = self.block_count(image)
        for index, piece in enumerate(slice_image(data, self.data_per_block, pad=True)):
            offset = index * self.data_per_block
            carried = min(self.data_per_block, len(data) - offset)
            block = encode_block(
                piece,
                block_no=index,
                num_blocks=total,
                target_address=image.load_address + offset,
                family_id=self.family_id,
            )
            yield block.to_bytes(), carried

    def __repr__(self) -> str:
        fam = f", family_id=0x{self.family_id:08X}" if self.family_id is not None else ""
        return f"UF2Framed(data_per_block={self.data_per_block}{fam})"


TransportSource = Union[Transport, Callable[[], Transport]]


class FlashOrchestrator:
    """
    Streams firmware images to a device.

    Example:
        connection = ConnectionState(transport)
        orchestrator = FlashOrchestrator(on_event=print)
        result = orchestrator.flash(image, connection, UF2Framed(256, 0xE48BFF56))
        if not result.ok:
            print(result.reason)

    Args:
        handshake: When given, the device is touched into its bootloader
            before streaming and released afterwards
        reenumerate: Transport (or callable returning one) for the device in
            bootloader mode; defaults to the original transport
        on_event: Progress sink receiving FlashEvent objects
        cancel_event: Event shared with another thread; setting it has the
            same effect as cancel(). A shared event is never cleared here, so
            a request made before flash() starts is honoured
        sleep: Injected sleep, used for the inter-chunk delay
    """

    def __init__(
        self,
        *,
        handshake: Optional[BootloaderHandshake] = None,
        reenumerate: Optional[TransportSource] = None,
        on_event: Optional[Callable[[FlashEvent], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.handshake = handshake
        self.reenumerate = reenumerate
        self.on_event = on_event
        self._sleep = sleep
        self._owns_cancel = cancel_event is None
        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self.session: Optional[FlashSession] = None

    def cancel(self) -> None:
        """Request cancellation; honoured before the next block is written."""
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def _emit(self, session: FlashSession, phase: FlashPhase, reason: str = "") -> None:
        session.phase = phase
        if self.on_event:
            self.on_event(FlashEvent(
                phase=phase,
                block_index=session.block_index,
                total_blocks=session.total_blocks,
                percent=session.percent,
                reason=reason,
            ))

    def _set_phase(self, session: FlashSession, phase: FlashPhase) -> None:
        logger.info("Flash phase: %s -> %s", session.phase.value, phase.value)
        self._emit(session, phase)

    def flash(
        self,
        image: FirmwareImage,
        connection: ConnectionState,
        mode: BlockEncodingStrategy,
    ) -> FlashResult:
        """
        Write image through connection using mode.

        Transport and handshake failures do not raise; they end the
        operation with a FAILED event and a failed FlashResult. Any other
        exception (including one raised by the event sink) also releases
        the transports and emits FAILED, then propagates.

        Raises:
            FlashInProgress: If a flash already owns this connection
        """
        connection.begin_flash()
        if self._owns_cancel:
            self._cancel.clear()
        session = FlashSession(total_bytes=len(image.data))
        self.session = session
        result = FlashResult(
            ok=False,
            operation="flash",
            mode=mode.name,
            bytes_len=len(image.data),
        )
        result.hashes["sha256"] = image.sha256
        original = connection.transport

        try:
            self._run(image, connection, mode, session)
        except FlashCancelled:
            self._abort(connection, original)
            self._fail(session, result, CANCELLED)
        except (TransportError, BootloaderHandshakeFailed, BlockOverflow, ValueError) as e:
            session.last_error = e
            self._abort(connection, original)
            self._fail(session, result, str(e))
        except BaseException as e:
            session.last_error = e
            self._abort(connection, original)
            self._fail(session, result, f"{type(e).__name__}: {e}")
            raise
        else:
            result.ok = True
            result.phase = FlashPhase.COMPLETED.value
            logger.info(
                "Flash complete: %d blocks, %d bytes", session.block_index, session.bytes_transferred
            )
            self._set_phase(session, FlashPhase.COMPLETED)
        finally:
            connection.end_flash()
            self.session = None

        result.blocks_written = session.block_index
        result.total_blocks = session.total_blocks
        result.failed_block = session.failed_block
        result.metadata["bytes_transferred"] = session.bytes_transferred
        return result

    def _run(
        self,
        image: FirmwareImage,
        connection: ConnectionState,
        mode: BlockEncodingStrategy,
        session: FlashSession,
    ) -> None:
        self._set_phase(session, FlashPhase.PREPARING)
        if not image.data:
            raise ValueError("empty firmware image")
        session.total_blocks = mode.block_count(image)
        if self._cancel.is_set():
            raise FlashCancelled()
        logger.info(
            "Flashing %d bytes as %d blocks (%r)", len(image.data), session.total_blocks, mode
        )

        original = connection.transport
        active = original
        if self.handshake is not None:
            self._set_phase(session, FlashPhase.ENTERING_BOOTLOADER)
            connection.connected.clear()
            self.handshake.enter_bootloader(original)
            active = self.handshake.attach(self.reenumerate or original)
            connection.transport = active
        elif not active.is_open:
            raise TransportError("Transport is not open")

        self._set_phase(session, FlashPhase.STREAMING)
        for index, (frame, carried) in enumerate(mode.iter_blocks(image)):
            if self._cancel.is_set():
                raise FlashCancelled()
            try:
                connection.write(frame)
            except TransportError:
                session.failed_block = index
                logger.error("Write failed at block %d/%d", index, session.total_blocks)
                raise
            session.block_index = index + 1
            session.bytes_transferred += carried
            self._emit(session, FlashPhase.STREAMING)
            if mode.inter_block_delay and session.block_index < session.total_blocks:
                self._sleep(mode.inter_block_delay)

        if self.handshake is not None:
            self._set_phase(session, FlashPhase.EXITING_BOOTLOADER)
            self.handshake.exit_bootloader(active, original=original)
            connection.transport = original
            if original.is_open:
                connection.connected.set()

    def _abort(self, connection: ConnectionState, original: Transport) -> None:
        """Release every transport this run touched."""
        if self.handshake is not None:
            self.handshake.reset()
        transports = [connection.transport]
        if original is not connection.transport:
            transports.append(original)
        for transport in transports:
            try:
                transport.close()
            except TransportError as e:
                logger.warning("Error closing transport after failure: %s", e)
        connection.transport = original
        connection.connected.clear()

    def _fail(self, session: FlashSession, result: FlashResult, reason: str) -> None:
        logger.error("Flash failed in %s: %s", session.phase.value, reason)
        result.ok = False
        result.phase = FlashPhase.FAILED.value
        result.reason = reason
        result.add_error(reason)
        self._emit(session, FlashPhase.FAILED, reason=reason)
