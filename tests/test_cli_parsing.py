"""Tests for CLI option parsing and command wiring."""

import pytest
import typer
from typer.testing import CliRunner

from mcu_flasher.cli import app, parse_int as cli_parse_int, parse_mode
from mcu_flasher.core.parsing import parse_int, parse_transfer_mode
from mcu_flasher.models import TransferMode
from mcu_flasher.protocol.uf2 import iter_blocks

runner = CliRunner()

HEX_TEXT = ":0300300002337A1E\n:00000001FF\n"


class TestParseIntCore:
    """Core parse_int raises ValueError."""

    def test_decimal(self):
        assert parse_int("4096", "offset") == 4096

    def test_hex_prefix(self):
        assert parse_int("0x1000", "offset") == 0x1000
        assert parse_int("0XE48BFF56", "family") == 0xE48BFF56

    def test_hex_suffix(self):
        assert parse_int("2000h", "base") == 0x2000

    def test_empty_is_none(self):
        assert parse_int(None, "x") is None
        assert parse_int("  ", "x") is None

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid base"):
            parse_int("0xZZ", "base")


class TestParseTransferMode:

    def test_names(self):
        assert parse_transfer_mode("raw") is TransferMode.RAW
        assert parse_transfer_mode(" UF2 ") is TransferMode.UF2

    def test_none_defers_to_profile(self):
        assert parse_transfer_mode(None) is None

    def test_invalid(self):
        with pytest.raises(ValueError, match="raw, uf2"):
            parse_transfer_mode("xmodem")


class TestCliWrappers:
    """CLI wrappers turn ValueError into typer.BadParameter."""

    def test_parse_int_bad_parameter(self):
        with pytest.raises(typer.BadParameter):
            cli_parse_int("nope", "chunk-size")

    def test_parse_mode_bad_parameter(self):
        with pytest.raises(typer.BadParameter):
            parse_mode("bogus")


class TestCommands:
    """Smoke tests through CliRunner."""

    def test_profiles_json(self):
        result = runner.invoke(app, ["profiles", "--json"])
        assert result.exit_code == 0
        assert "rp2040" in result.output
        assert "0xE48BFF56" in result.output

    def test_parse_hex_writes_binary(self, tmp_path):
        src = tmp_path / "blink.hex"
        src.write_text(HEX_TEXT)
        out = tmp_path / "blink.bin"
        result = runner.invoke(app, ["parse-hex", str(src), "--out", str(out)])
        assert result.exit_code == 0, result.output
        assert out.read_bytes() == b"\x02\x33\x7A"

    def test_parse_hex_malformed(self, tmp_path):
        src = tmp_path / "bad.hex"
        src.write_text(":0400000001\n")
        result = runner.invoke(app, ["parse-hex", str(src)])
        assert result.exit_code == 1
        assert "Line 1" in result.output

    def test_convert_then_inspect(self, tmp_path):
        src = tmp_path / "app.bin"
        src.write_bytes(bytes(1000))
        out = tmp_path / "app.uf2"
        result = runner.invoke(
            app, ["convert", str(src), "--out", str(out), "--profile", "samd21"]
        )
        assert result.exit_code == 0, result.output
        assert len(list(iter_blocks(out.read_bytes()))) == 4

        result = runner.invoke(app, ["inspect", str(out), "--json"])
        assert result.exit_code == 0
        assert "0x68ED2B88" in result.output

    def test_convert_unknown_profile(self, tmp_path):
        src = tmp_path / "app.bin"
        src.write_bytes(bytes(10))
        result = runner.invoke(
            app, ["convert", str(src), "--out", str(tmp_path / "x.uf2"), "--profile", "pic16"]
        )
        assert result.exit_code == 1

    def test_flash_dry_run(self, tmp_path):
        src = tmp_path / "app.bin"
        src.write_bytes(bytes(600))
        result = runner.invoke(
            app,
            ["flash", str(src), "--port", "/dev/ttyACM0", "--profile", "rp2040", "--dry-run"],
        )
        assert result.exit_code == 0, result.output
        assert "Blocks: 0/3" in result.output

    def test_flash_missing_file(self, tmp_path):
        result = runner.invoke(
            app, ["flash", str(tmp_path / "none.bin"), "--port", "/dev/ttyACM0"]
        )
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_flash_bad_mode(self, tmp_path):
        src = tmp_path / "app.bin"
        src.write_bytes(bytes(16))
        result = runner.invoke(
            app, ["flash", str(src), "--port", "/dev/ttyACM0", "--mode", "xmodem", "--dry-run"]
        )
        assert result.exit_code != 0
