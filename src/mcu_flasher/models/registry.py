"""
Device profile registry.

Provides a single source of truth for per-family flashing parameters:
- Transfer mode (raw chunked stream or UF2 blocks) and block sizes
- UF2 family ID and flash load address
- Bootloader touch baud rate, settle delay and re-enumeration behaviour

Usage:
    from mcu_flasher.models import list_profiles, get_profile

    profile = get_profile("rp2040")
    mode = profile.make_mode()
    handshake_config = profile.bootloader_config()
"""

from dataclasses import dataclass, replace
from difflib import get_close_matches
from enum import Enum
from typing import Dict, List, Optional, Tuple

from mcu_flasher.flasher import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DATA_PER_BLOCK,
    DEFAULT_INTER_CHUNK_DELAY,
    BlockEncodingStrategy,
    RawChunked,
    UF2Framed,
)
from mcu_flasher.protocol.bootloader import (
    DEFAULT_REENUMERATION_TIMEOUT,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_TOUCH_BAUDRATE,
    BootloaderConfig,
)
from mcu_flasher.protocol.transport import DEFAULT_OPERATING_BAUDRATE


class TransferMode(Enum):
    """How firmware bytes are framed on the wire."""
    RAW = "raw"     # verbatim chunks with inter-chunk delay
    UF2 = "uf2"     # 512-byte UF2 blocks


@dataclass(frozen=True)
class DeviceProfile:
    """
    Flashing parameters for one device family.

    Bootloader fields feed BootloaderConfig; transfer fields feed the
    block encoding strategy.
    """
    # Basic identification
    name: str
    description: str = ""

    # Transfer configuration
    mode: TransferMode = TransferMode.UF2
    family_id: Optional[int] = None
    load_address: int = 0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY
    data_per_block: int = DEFAULT_DATA_PER_BLOCK

    # Bootloader entry
    uses_touch: bool = True
    touch_baudrate: int = DEFAULT_TOUCH_BAUDRATE
    operating_baudrate: int = DEFAULT_OPERATING_BAUDRATE
    settle_delay: float = DEFAULT_SETTLE_DELAY
    reenumeration_timeout: float = DEFAULT_REENUMERATION_TIMEOUT
    reopen_after_reset: bool = False

    notes: Tuple[str, ...] = ()

    def bootloader_config(self, **overrides) -> BootloaderConfig:
        """Build the handshake configuration, with optional field overrides."""
        config = BootloaderConfig(
            touch_baudrate=self.touch_baudrate,
            operating_baudrate=self.operating_baudrate,
            settle_delay=self.settle_delay,
            reenumeration_timeout=self.reenumeration_timeout,
            reopen_after_reset=self.reopen_after_reset,
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **overrides) if overrides else config

    def make_mode(
        self,
        mode: Optional[TransferMode] = None,
        *,
        chunk_size: Optional[int] = None,
        data_per_block: Optional[int] = None,
        family_id: Optional[int] = None,
    ) -> BlockEncodingStrategy:
        """Instantiate the block encoding strategy for this profile."""
        selected = mode or self.mode
        if selected is TransferMode.RAW:
            return RawChunked(
                chunk_size=chunk_size or self.chunk_size,
                inter_chunk_delay=self.inter_chunk_delay,
            )
        return UF2Framed(
            data_per_block=data_per_block or self.data_per_block,
            family_id=family_id if family_id is not None else self.family_id,
        )

    def to_dict(self) -> Dict:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "description": self.description,
            "mode": self.mode.value,
            "family_id": f"0x{self.family_id:08X}" if self.family_id is not None else None,
            "load_address": f"0x{self.load_address:08X}",
            "chunk_size": self.chunk_size,
            "data_per_block": self.data_per_block,
            "uses_touch": self.uses_touch,
            "touch_baudrate": self.touch_baudrate,
            "operating_baudrate": self.operating_baudrate,
            "settle_delay": self.settle_delay,
            "reopen_after_reset": self.reopen_after_reset,
            "notes": list(self.notes),
        }


# ============================================================================
# PROFILE REGISTRY - All known device families
# ============================================================================

_PROFILE_REGISTRY: Dict[str, DeviceProfile] = {}


def _normalize(name: str) -> str:
    return name.strip().lower().replace("_", "-").replace(" ", "-")


def _register_profile(profile: DeviceProfile) -> None:
    """Register a device profile."""
    _PROFILE_REGISTRY[_normalize(profile.name)] = profile


def _init_registry() -> None:
    """Initialize the registry with known device families."""

    # Plain serial receiver; no bootloader handshake, data streamed as-is
    _register_profile(DeviceProfile(
        name="arduino",
        description="Arduino-style serial receiver, raw 64-byte chunks",
        mode=TransferMode.RAW,
        uses_touch=False,
        notes=(
            "Chunks are paced with a 50 ms delay; there is no flow control.",
        ),
    ))

    _register_profile(DeviceProfile(
        name="generic-uf2",
        description="Any UF2 bootloader entered by a 1200 bps touch",
        mode=TransferMode.UF2,
    ))

    _register_profile(DeviceProfile(
        name="rp2040",
        description="Raspberry Pi RP2040",
        family_id=0xE48BFF56,
        load_address=0x10000000,
    ))

    _register_profile(DeviceProfile(
        name="rp2350",
        description="Raspberry Pi RP2350 (ARM secure)",
        family_id=0xE48BFF59,
        load_address=0x10000000,
    ))

    _register_profile(DeviceProfile(
        name="samd21",
        description="Microchip SAMD21 (Adafruit UF2 bootloader)",
        family_id=0x68ED2B88,
        load_address=0x00002000,
    ))

    _register_profile(DeviceProfile(
        name="samd51",
        description="Microchip SAMD51 (Adafruit UF2 bootloader)",
        family_id=0x55114460,
        load_address=0x00004000,
    ))

    _register_profile(DeviceProfile(
        name="nrf52840",
        description="Nordic nRF52840 (Adafruit UF2 bootloader, S140 v7)",
        family_id=0xADA52840,
        load_address=0x00027000,
        settle_delay=3.0,
        reopen_after_reset=True,
        notes=(
            "The application port comes back under the original name after reset.",
        ),
    ))


_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def list_profiles() -> List[str]:
    """
    List all registered profile names.

    Returns:
        Sorted list of profile names.
    """
    return sorted(p.name for p in _PROFILE_REGISTRY.values())


def get_profile(name: str) -> DeviceProfile:
    """
    Get the profile for a device family.

    Lookup ignores case and treats '_', ' ' and '-' alike.

    Raises:
        KeyError: If no profile matches (message lists close matches)
    """
    key = _normalize(name)
    profile = _PROFILE_REGISTRY.get(key)
    if profile is None:
        suggestions = get_close_matches(key, list(_PROFILE_REGISTRY), n=3)
        hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
        raise KeyError(f"Unknown device profile '{name}'.{hint}")
    return profile


def find_profile_by_family(family_id: int) -> Optional[DeviceProfile]:
    """Return the profile whose UF2 family ID matches, if any."""
    for profile in _PROFILE_REGISTRY.values():
        if profile.family_id == family_id:
            return profile
    return None
