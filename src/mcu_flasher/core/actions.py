"""
Core workflow actions for MCU Flasher.

This module exposes pure-ish functions that the CLI (or any other front end)
can call. Each returns an OperationResult with the package logs captured.
"""

import hashlib
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple

from mcu_flasher.firmware import HEX_SUFFIXES, FirmwareImage, load_firmware
from mcu_flasher.flasher import FlashEvent, FlashOrchestrator, UF2Framed
from mcu_flasher.hex_parser import HexRecordParser
from mcu_flasher.models import DeviceProfile, TransferMode, get_profile
from mcu_flasher.protocol.bootloader import BootloaderHandshake, PortWatcher
from mcu_flasher.protocol.transport import (
    ConnectionState,
    SerialTransport,
    Transport,
    TransportConfig,
    TransportError,
)
from mcu_flasher.protocol.uf2 import image_to_uf2, iter_blocks

from .results import FlashResult, OperationResult

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "mcu_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def prepare_image(
    firmware_path: str,
    *,
    load_address: Optional[int] = None,
    strict: bool = False,
) -> Tuple[FirmwareImage, list]:
    """
    Load a firmware file and collect non-fatal warnings about it.

    Returns:
        Tuple of (image, warnings)

    Raises:
        FileNotFoundError: If the file doesn't exist
        MalformedRecord / InvalidBlock: On decode errors
    """
    path = Path(firmware_path)
    warnings = []
    if path.suffix.lower() in HEX_SUFFIXES and path.exists():
        parser = HexRecordParser(strict=strict)
        data = parser.parse(path.read_text(encoding="ascii", errors="replace"))
        if parser.address_gaps:
            first_end, first_addr = parser.address_gaps[0]
            warnings.append(
                f"HEX data is not contiguous: {len(parser.address_gaps)} address gap(s), "
                f"first at 0x{first_end:04X} -> 0x{first_addr:04X}"
            )
        image = FirmwareImage(data=data, load_address=load_address or 0, source=str(path))
    else:
        image = load_firmware(path, load_address=load_address, strict=strict)
    if not image.data:
        warnings.append("Firmware file contains no data (empty firmware image)")
    return image, warnings


def build_orchestrator(
    profile: DeviceProfile,
    config: TransportConfig,
    *,
    use_bootloader: bool,
    settle_delay: Optional[float] = None,
    on_event: Optional[Callable[[FlashEvent], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    list_ports: Optional[Callable[[], Iterable[str]]] = None,
) -> FlashOrchestrator:
    """Create an orchestrator wired for the profile's bootloader behaviour."""
    if not use_bootloader:
        return FlashOrchestrator(on_event=on_event, cancel_event=cancel_event)

    bl_config = profile.bootloader_config(settle_delay=settle_delay)
    watcher_kwargs = {"timeout": bl_config.reenumeration_timeout}
    if list_ports is not None:
        watcher_kwargs["list_ports"] = list_ports
    # Snapshot the port list now, before the touch makes the device vanish
    watcher = PortWatcher(config, **watcher_kwargs)
    return FlashOrchestrator(
        handshake=BootloaderHandshake(bl_config),
        reenumerate=watcher,
        on_event=on_event,
        cancel_event=cancel_event,
    )


def flash_firmware_serial(
    port: str,
    firmware_path: str,
    *,
    profile: str = "generic-uf2",
    mode: Optional[TransferMode] = None,
    chunk_size: Optional[int] = None,
    data_per_block: Optional[int] = None,
    family_id: Optional[int] = None,
    load_address: Optional[int] = None,
    use_bootloader: Optional[bool] = None,
    settle_delay: Optional[float] = None,
    baudrate: Optional[int] = None,
    strict: bool = False,
    dry_run: bool = False,
    on_event: Optional[Callable[[FlashEvent], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    transport_factory: Callable[[TransportConfig], Transport] = SerialTransport,
) -> FlashResult:
    """
    Flash a firmware file to a serial device.

    Profile values apply unless overridden by the keyword arguments.

    Args:
        port: Serial port path
        firmware_path: .hex, .bin or .uf2 file
        profile: Device profile name (see list_profiles())
        use_bootloader: Perform the baud-rate touch first (profile default)
        dry_run: Load and plan only; nothing is written
        on_event: Progress sink for FlashEvents
        cancel_event: Set from another thread to cancel between blocks
        transport_factory: Builds the application-mode transport

    Returns:
        FlashResult with:
            - ok / reason / failed_block
            - blocks_written / total_blocks
            - hashes["sha256"]: hash of the image
            - logs: captured package log lines
    """
    with _capture_logs() as logs:
        try:
            device = get_profile(profile)
            image, warnings = prepare_image(
                firmware_path,
                load_address=load_address if load_address is not None else device.load_address,
                strict=strict,
            )
            strategy = device.make_mode(
                mode,
                chunk_size=chunk_size,
                data_per_block=data_per_block,
                family_id=family_id,
            )
            bootloader = device.uses_touch if use_bootloader is None else use_bootloader
            config = TransportConfig(
                port=port,
                baudrate=baudrate or device.operating_baudrate,
            )

            if isinstance(strategy, UF2Framed) and len(image.data) % strategy.data_per_block:
                pad = strategy.data_per_block - len(image.data) % strategy.data_per_block
                warnings.append(f"Final UF2 block padded with {pad} zero bytes")

            if dry_run:
                result = FlashResult.success(
                    operation="flash",
                    device=device.name,
                    bytes_len=len(image.data),
                    mode=strategy.name,
                    phase="dry-run",
                    total_blocks=strategy.block_count(image) if image.data else 0,
                )
                result.hashes["sha256"] = image.sha256
                result.warnings.extend(warnings)
                result.add_warning("Dry run: no data was written to the device")
                result.metadata.update({
                    "port": port,
                    "load_address": f"0x{image.load_address:08X}",
                    "bootloader": bootloader,
                    "strategy": repr(strategy),
                })
                result.logs = list(logs)
                return result

            orchestrator = build_orchestrator(
                device,
                config,
                use_bootloader=bootloader,
                settle_delay=settle_delay,
                on_event=on_event,
                cancel_event=cancel_event,
            )
            connection = ConnectionState(transport_factory(config))
            try:
                if not bootloader:
                    connection.open()
                result = orchestrator.flash(image, connection, strategy)
            finally:
                try:
                    connection.close()
                except TransportError as e:
                    logger.warning("Error closing %s: %s", port, e)

            result.device = device.name
            result.warnings.extend(warnings)
            result.metadata.update({
                "port": port,
                "load_address": f"0x{image.load_address:08X}",
                "bootloader": bootloader,
                "strategy": repr(strategy),
            })
            result.logs = list(logs)
            return result

        except Exception as exc:
            logger.error("Flash failed: %s", exc)
            result = FlashResult(ok=False, operation="flash", phase="failed", reason=str(exc))
            result.add_error(str(exc))
            result.logs = list(logs)
            return result


def convert_firmware(
    input_path: str,
    output_path: str,
    *,
    profile: str = "generic-uf2",
    family_id: Optional[int] = None,
    base_address: Optional[int] = None,
    data_per_block: Optional[int] = None,
    strict: bool = False,
) -> OperationResult:
    """
    Convert a .hex/.bin firmware file into a .uf2 file.

    Returns:
        OperationResult with metadata["blocks"], metadata["output"]
    """
    with _capture_logs() as logs:
        try:
            device = get_profile(profile)
            base = base_address if base_address is not None else device.load_address
            image, warnings = prepare_image(input_path, load_address=base, strict=strict)
            if not image.data:
                raise ValueError("empty firmware image")
            fam = family_id if family_id is not None else device.family_id
            size = data_per_block or device.data_per_block

            blob = image_to_uf2(
                image.data,
                base_address=image.load_address,
                data_per_block=size,
                family_id=fam,
            )
            out = Path(output_path)
            out.write_bytes(blob)
            logger.info("Wrote %s (%d blocks)", out, len(blob) // 512)

            result = OperationResult.success(
                operation="convert",
                device=device.name,
                bytes_len=len(image.data),
            )
            result.warnings.extend(warnings)
            result.hashes["sha256"] = image.sha256
            result.hashes["uf2_sha256"] = hashlib.sha256(blob).hexdigest()
            result.metadata.update({
                "output": str(out),
                "blocks": len(blob) // 512,
                "family_id": f"0x{fam:08X}" if fam is not None else None,
                "base_address": f"0x{image.load_address:08X}",
                "data_per_block": size,
            })
            result.logs = list(logs)
            return result
        except Exception as exc:
            logger.error("Conversion failed: %s", exc)
            result = OperationResult.failure("convert", str(exc))
            result.logs = list(logs)
            return result


def inspect_uf2(
    path: str,
    *,
    profile: Optional[str] = None,
    strict: bool = False,
) -> OperationResult:
    """
    Decode a .uf2 file and summarize its blocks.

    Returns:
        OperationResult with metadata:
            - blocks: number of blocks
            - families: {family_id_hex: block_count}
            - address_range: "0xSTART-0xEND"
            - payload_sizes: sorted distinct payload sizes
    """
    with _capture_logs() as logs:
        try:
            blob = Path(path).read_bytes()
            blocks = list(iter_blocks(blob, strict=strict))

            result = OperationResult.success(operation="inspect", bytes_len=len(blob))
            result.hashes["sha256"] = hashlib.sha256(blob).hexdigest()

            families = Counter(
                f"0x{b.family_id:08X}" if b.has_family_id else "none" for b in blocks
            )
            result.metadata["blocks"] = len(blocks)
            result.metadata["families"] = dict(families)
            if blocks:
                start = min(b.target_address for b in blocks)
                end = max(b.target_address + b.payload_size for b in blocks)
                result.metadata["address_range"] = f"0x{start:08X}-0x{end:08X}"
                result.metadata["payload_sizes"] = sorted({b.payload_size for b in blocks})
                totals = {b.num_blocks for b in blocks}
                if totals != {len(blocks)}:
                    result.add_warning(
                        f"Block count field {sorted(totals)} does not match {len(blocks)} blocks in file"
                    )

            if profile:
                device = get_profile(profile)
                result.device = device.name
                expected = device.family_id
                if expected is not None and any(
                    b.has_family_id and b.family_id != expected for b in blocks
                ):
                    result.add_warning(
                        f"UF2 family does not match profile {device.name} (0x{expected:08X})"
                    )

            result.logs = list(logs)
            return result
        except Exception as exc:
            logger.error("Inspect failed: %s", exc)
            result = OperationResult.failure("inspect", str(exc))
            result.logs = list(logs)
            return result
