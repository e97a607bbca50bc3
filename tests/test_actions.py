"""Tests for core workflow actions (convert / inspect / flash)."""

import pytest

from mcu_flasher.core.actions import (
    convert_firmware,
    flash_firmware_serial,
    inspect_uf2,
    prepare_image,
)
from mcu_flasher.core.messages import WarningCode, result_to_warnings
from mcu_flasher.flasher import FlashPhase
from mcu_flasher.models import TransferMode
from mcu_flasher.protocol.uf2 import decode_block, image_to_uf2, iter_blocks

from conftest import FakeTransport

HEX_TEXT = ":0300300002337A1E\n:00000001FF\n"
GAPPY_HEX = ":0100000011EE\n:0100100022CD\n:00000001FF\n"


@pytest.fixture
def hex_file(tmp_path):
    path = tmp_path / "blink.hex"
    path.write_text(HEX_TEXT)
    return path


@pytest.fixture
def bin_file(tmp_path):
    path = tmp_path / "app.bin"
    path.write_bytes(bytes(range(256)) * 4)
    return path


class TestPrepareImage:

    def test_hex_image(self, hex_file):
        image, warnings = prepare_image(str(hex_file))
        assert image.data == b"\x02\x33\x7A"
        assert warnings == []

    def test_gap_warning(self, tmp_path):
        path = tmp_path / "gappy.hex"
        path.write_text(GAPPY_HEX)
        image, warnings = prepare_image(str(path))
        assert image.data == b"\x11\x22"
        assert len(warnings) == 1
        assert "not contiguous" in warnings[0]

    def test_empty_warning(self, tmp_path):
        path = tmp_path / "empty.hex"
        path.write_text(":00000001FF\n")
        _, warnings = prepare_image(str(path))
        assert any("empty" in w for w in warnings)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            prepare_image(str(tmp_path / "nope.bin"))


class TestConvertAndInspect:

    def test_convert_hex_to_uf2(self, hex_file, tmp_path):
        out = tmp_path / "blink.uf2"
        result = convert_firmware(str(hex_file), str(out), profile="rp2040")

        assert result.ok
        assert result.metadata["blocks"] == 1
        assert result.metadata["family_id"] == "0xE48BFF56"
        block = decode_block(out.read_bytes())
        assert block.target_address == 0x10000000
        assert block.data[:3] == b"\x02\x33\x7A"

    def test_convert_overrides(self, bin_file, tmp_path):
        out = tmp_path / "app.uf2"
        result = convert_firmware(
            str(bin_file), str(out), base_address=0x8000, data_per_block=128, family_id=0x1234,
        )
        assert result.ok
        blocks = list(iter_blocks(out.read_bytes()))
        assert len(blocks) == 8
        assert blocks[0].target_address == 0x8000
        assert blocks[-1].family_id == 0x1234

    def test_convert_rejects_large_blocks(self, bin_file, tmp_path):
        result = convert_firmware(str(bin_file), str(tmp_path / "x.uf2"), data_per_block=480)
        assert not result.ok
        assert "476" in result.errors[0]

    def test_convert_empty_image_fails(self, tmp_path):
        path = tmp_path / "empty.hex"
        path.write_text(":00000001FF\n")
        result = convert_firmware(str(path), str(tmp_path / "e.uf2"))
        assert not result.ok

    def test_inspect_summary(self, tmp_path):
        path = tmp_path / "fw.uf2"
        path.write_bytes(image_to_uf2(bytes(600), base_address=0x2000, family_id=0x68ED2B88))
        result = inspect_uf2(str(path), profile="samd21")
        assert result.ok
        assert result.metadata["blocks"] == 3
        assert result.metadata["families"] == {"0x68ED2B88": 3}
        assert result.metadata["address_range"] == "0x00002000-0x00002300"
        assert result.warnings == []

    def test_inspect_family_mismatch(self, tmp_path):
        path = tmp_path / "fw.uf2"
        path.write_bytes(image_to_uf2(bytes(10), family_id=0xE48BFF56))
        result = inspect_uf2(str(path), profile="samd21")
        assert result.ok
        codes = [w.code for w in result_to_warnings(result)]
        assert WarningCode.W_FAMILY_MISMATCH in codes

    def test_inspect_bad_file(self, tmp_path):
        path = tmp_path / "bad.uf2"
        path.write_bytes(b"\x00" * 512)
        result = inspect_uf2(str(path))
        assert not result.ok
        assert "magic" in result.errors[0]


class TestFlashFirmwareSerial:

    def test_dry_run_writes_nothing(self, bin_file):
        created = []

        def factory(config):
            created.append(config)
            return FakeTransport(port=config.port)

        result = flash_firmware_serial(
            "/dev/ttyACM0", str(bin_file), profile="rp2040", dry_run=True,
            transport_factory=factory,
        )
        assert result.ok
        assert result.phase == "dry-run"
        assert result.total_blocks == 4
        assert created == []
        assert any("Dry run" in w for w in result.warnings)

    def test_raw_flash_without_bootloader(self, bin_file):
        transports = []
        events = []

        def factory(config):
            transport = FakeTransport(port=config.port, baudrate=config.baudrate)
            transports.append(transport)
            return transport

        result = flash_firmware_serial(
            "/dev/ttyUSB0",
            str(bin_file),
            profile="arduino",
            chunk_size=256,
            on_event=events.append,
            transport_factory=factory,
        )

        assert result.ok, result.errors
        assert result.mode == "raw"
        assert result.blocks_written == 4
        transport = transports[0]
        assert b"".join(transport.writes) == bin_file.read_bytes()
        assert not transport.is_open
        assert events[-1].phase is FlashPhase.COMPLETED
        assert result.hashes["sha256"]
        assert result.metadata["port"] == "/dev/ttyUSB0"

    def test_uf2_mode_override_without_touch(self, hex_file):
        transports = []

        def factory(config):
            transports.append(FakeTransport(port=config.port))
            return transports[-1]

        result = flash_firmware_serial(
            "/dev/ttyACM0",
            str(hex_file),
            profile="rp2040",
            mode=TransferMode.UF2,
            use_bootloader=False,
            transport_factory=factory,
        )
        assert result.ok
        assert len(transports[0].writes) == 1
        assert decode_block(transports[0].writes[0]).target_address == 0x10000000
        assert any("padded" in w for w in result.warnings)

    def test_open_failure_is_a_failed_result(self, bin_file):
        result = flash_firmware_serial(
            "/dev/ttyUSB9",
            str(bin_file),
            profile="arduino",
            transport_factory=lambda config: FakeTransport(fail_open=True),
        )
        assert not result.ok
        assert "Cannot open port" in result.reason
        codes = [w.code for w in result_to_warnings(result)]
        assert WarningCode.W_DEVICE_NOT_FOUND in codes

    def test_unknown_profile(self, bin_file):
        result = flash_firmware_serial("/dev/ttyUSB0", str(bin_file), profile="z80")
        assert not result.ok
        assert "Unknown device profile" in result.reason
