"""Device protocol layer - transport, UF2 framing, bootloader entry, commands."""

from .transport import (
    Transport,
    TransportConfig,
    SerialTransport,
    ConnectionState,
    TransportError,
    EndOfStream,
    FlashInProgress,
)
from .uf2 import (
    Uf2Block,
    Uf2Error,
    BlockOverflow,
    InvalidBlock,
    encode_block,
    decode_block,
    iter_blocks,
    image_to_uf2,
    UF2_BLOCK_SIZE,
    UF2_PAYLOAD_CAPACITY,
)
from .bootloader import (
    BootloaderHandshake,
    BootloaderConfig,
    BootloaderHandshakeFailed,
    HandshakePhase,
    PortWatcher,
)
from .command_channel import CommandChannel

__all__ = [
    # Transport
    "Transport",
    "TransportConfig",
    "SerialTransport",
    "ConnectionState",
    "TransportError",
    "EndOfStream",
    "FlashInProgress",
    # UF2
    "Uf2Block",
    "Uf2Error",
    "BlockOverflow",
    "InvalidBlock",
    "encode_block",
    "decode_block",
    "iter_blocks",
    "image_to_uf2",
    "UF2_BLOCK_SIZE",
    "UF2_PAYLOAD_CAPACITY",
    # Bootloader
    "BootloaderHandshake",
    "BootloaderConfig",
    "BootloaderHandshakeFailed",
    "HandshakePhase",
    "PortWatcher",
    # Commands
    "CommandChannel",
]
