"""Tests for block encoding strategies and the flash orchestrator."""

import threading

import pytest

from mcu_flasher.firmware import FirmwareImage
from mcu_flasher.flasher import (
    CANCELLED,
    FlashOrchestrator,
    FlashPhase,
    RawChunked,
    UF2Framed,
    block_count,
    percent_of,
    slice_image,
)
from mcu_flasher.protocol.bootloader import BootloaderConfig, BootloaderHandshake
from mcu_flasher.protocol.transport import ConnectionState, FlashInProgress
from mcu_flasher.protocol.uf2 import BlockOverflow, decode_block

from conftest import FakeTransport


def _image(size, load_address=0):
    return FirmwareImage(data=bytes(i & 0xFF for i in range(size)), load_address=load_address)


class EventSink:
    """Collects FlashEvents."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def phases(self):
        return [e.phase for e in self.events]

    def streaming(self):
        return [e for e in self.events if e.phase is FlashPhase.STREAMING]

    def terminal(self):
        return [e for e in self.events if e.terminal]


class TestHelpers:
    """Block math shared by the strategies."""

    @pytest.mark.parametrize("length,size,expected", [
        (1000, 480, 3),
        (960, 480, 2),
        (1, 64, 1),
        (64, 64, 1),
        (65, 64, 2),
        (0, 64, 0),
    ])
    def test_block_count_is_ceiling(self, length, size, expected):
        assert block_count(length, size) == expected

    def test_slice_image_keeps_short_tail(self):
        pieces = slice_image(bytes(1000), 480, pad=True)
        assert [len(p) for p in pieces] == [480, 480, 480]
        assert pieces[2][40:] == bytes(440)

    def test_slice_image_without_padding(self):
        pieces = slice_image(bytes(range(10)), 4)
        assert pieces == [bytes([0, 1, 2, 3]), bytes([4, 5, 6, 7]), bytes([8, 9])]

    def test_percent_rounds_half_up(self):
        assert [percent_of(i, 3) for i in (1, 2, 3)] == [33, 67, 100]
        assert percent_of(0, 0) == 0
        assert percent_of(1, 8) == 13


class TestStrategies:
    """Frames produced per mode."""

    def test_raw_chunks_are_verbatim(self):
        strategy = RawChunked(chunk_size=64)
        frames = list(strategy.iter_blocks(_image(150)))
        assert [len(f) for f, _ in frames] == [64, 64, 22]
        assert b"".join(f for f, _ in frames) == _image(150).data

    def test_uf2_frames_pad_last_block(self):
        strategy = UF2Framed(data_per_block=256, family_id=0xE48BFF56)
        frames = list(strategy.iter_blocks(_image(300, load_address=0x10000000)))
        assert len(frames) == 2
        assert [carried for _, carried in frames] == [256, 44]
        last = decode_block(frames[1][0])
        assert last.payload_size == 256
        assert last.target_address == 0x10000100
        assert last.block_no == 1 and last.num_blocks == 2
        assert last.family_id == 0xE48BFF56

    def test_uf2_rejects_oversized_blocks(self):
        with pytest.raises(BlockOverflow):
            UF2Framed(data_per_block=480)

    def test_raw_rejects_zero_chunk(self):
        with pytest.raises(ValueError):
            RawChunked(chunk_size=0)


class TestFlashOrchestrator:
    """Streaming, progress, cancellation and failure handling."""

    def test_raw_flash_writes_all_blocks_in_order(self, open_transport, no_sleep):
        sink = EventSink()
        orchestrator = FlashOrchestrator(on_event=sink, sleep=no_sleep)
        connection = ConnectionState(open_transport)

        result = orchestrator.flash(_image(1000), connection, RawChunked(480, inter_chunk_delay=0))

        assert result.ok
        assert result.blocks_written == result.total_blocks == 3
        assert [len(w) for w in open_transport.writes] == [480, 480, 40]
        streaming = sink.streaming()
        assert [(e.block_index, e.total_blocks) for e in streaming] == [(1, 3), (2, 3), (3, 3)]
        assert [e.percent for e in streaming] == [33, 67, 100]
        assert sink.phases()[0] is FlashPhase.PREPARING
        assert [e.phase for e in sink.terminal()] == [FlashPhase.COMPLETED]

    def test_uf2_flash_writes_512_byte_blocks(self, open_transport):
        sink = EventSink()
        orchestrator = FlashOrchestrator(on_event=sink)
        connection = ConnectionState(open_transport)

        result = orchestrator.flash(_image(700), connection, UF2Framed(256))

        assert result.ok
        assert result.mode == "uf2"
        assert all(len(w) == 512 for w in open_transport.writes)
        assert [decode_block(w).block_no for w in open_transport.writes] == [0, 1, 2]
        assert all(decode_block(w).num_blocks == 3 for w in open_transport.writes)
        assert result.metadata["bytes_transferred"] == 700

    def test_inter_chunk_delay_between_blocks_only(self, open_transport, no_sleep):
        orchestrator = FlashOrchestrator(sleep=no_sleep)
        connection = ConnectionState(open_transport)
        orchestrator.flash(_image(200), connection, RawChunked(64, inter_chunk_delay=0.05))
        assert no_sleep.calls == [0.05, 0.05, 0.05]

    def test_write_failure_reports_block(self, no_sleep):
        transport = FakeTransport(start_open=True, fail_on_write=1)
        sink = EventSink()
        orchestrator = FlashOrchestrator(on_event=sink, sleep=no_sleep)
        connection = ConnectionState(transport)

        result = orchestrator.flash(_image(300), connection, RawChunked(100))

        assert not result.ok
        assert result.failed_block == 1
        assert result.blocks_written == 1
        assert "unplugged" in result.reason
        terminal = sink.terminal()
        assert len(terminal) == 1 and terminal[0].phase is FlashPhase.FAILED
        assert not connection.is_connected
        assert not connection.flash_active

    def test_cancel_between_blocks(self, open_transport, no_sleep):
        sink = EventSink()
        orchestrator = FlashOrchestrator(sleep=no_sleep)

        def on_event(event):
            sink(event)
            if event.phase is FlashPhase.STREAMING and event.block_index == 1:
                orchestrator.cancel()

        orchestrator.on_event = on_event
        connection = ConnectionState(open_transport)

        result = orchestrator.flash(_image(300), connection, RawChunked(100))

        assert not result.ok
        assert result.cancelled
        assert result.reason == CANCELLED
        assert len(open_transport.writes) == 1
        assert sink.terminal()[0].reason == CANCELLED

    def test_flash_in_progress_rejected(self, open_transport):
        connection = ConnectionState(open_transport)
        connection.begin_flash()
        with pytest.raises(FlashInProgress):
            FlashOrchestrator().flash(_image(10), connection, RawChunked())
        assert open_transport.writes == []

    def test_empty_image_fails_without_writing(self, open_transport):
        sink = EventSink()
        connection = ConnectionState(open_transport)
        result = FlashOrchestrator(on_event=sink).flash(_image(0), connection, RawChunked())
        assert not result.ok
        assert "empty" in result.reason
        assert open_transport.writes == []
        assert sink.terminal()[0].phase is FlashPhase.FAILED

    def test_closed_transport_without_handshake_fails(self, fake_transport):
        connection = ConnectionState(fake_transport)
        result = FlashOrchestrator().flash(_image(10), connection, RawChunked())
        assert not result.ok
        assert "not open" in result.reason

    def test_connection_released_after_success(self, open_transport):
        connection = ConnectionState(open_transport)
        FlashOrchestrator().flash(_image(10), connection, RawChunked(inter_chunk_delay=0))
        assert not connection.flash_active
        connection.begin_flash()

    def test_sink_error_releases_connection(self, open_transport, no_sleep):
        """An exception from the event sink still closes the port and emits FAILED."""
        sink = EventSink()

        def on_event(event):
            sink(event)
            if event.phase is FlashPhase.STREAMING and event.block_index == 2:
                raise RuntimeError("display crashed")

        connection = ConnectionState(open_transport)
        orchestrator = FlashOrchestrator(on_event=on_event, sleep=no_sleep)

        with pytest.raises(RuntimeError, match="display crashed"):
            orchestrator.flash(_image(300), connection, RawChunked(100))

        assert [e.phase for e in sink.terminal()] == [FlashPhase.FAILED]
        assert "RuntimeError" in sink.terminal()[0].reason
        assert not open_transport.is_open
        assert not connection.is_connected
        assert not connection.flash_active

    def test_transport_os_error_releases_connection(self, no_sleep):
        class BrokenTransport(FakeTransport):
            def write(self, data):
                raise OSError("driver fault")

        transport = BrokenTransport(start_open=True)
        sink = EventSink()
        connection = ConnectionState(transport)

        with pytest.raises(OSError):
            FlashOrchestrator(on_event=sink, sleep=no_sleep).flash(
                _image(10), connection, RawChunked()
            )

        assert sink.phases()[-1] is FlashPhase.FAILED
        assert not transport.is_open
        assert not connection.flash_active

    def test_shared_cancel_set_before_flash_is_honoured(self, open_transport):
        cancel_event = threading.Event()
        cancel_event.set()
        orchestrator = FlashOrchestrator(cancel_event=cancel_event)

        result = orchestrator.flash(_image(300), ConnectionState(open_transport), RawChunked(100))

        assert result.cancelled
        assert open_transport.writes == []
        assert cancel_event.is_set()

    def test_own_cancel_is_reset_between_runs(self, open_transport, no_sleep):
        orchestrator = FlashOrchestrator(sleep=no_sleep)
        orchestrator.cancel()
        result = orchestrator.flash(_image(10), ConnectionState(open_transport), RawChunked())
        assert result.ok


class TestFlashWithBootloader:
    """Orchestrator driving the bootloader handshake."""

    def test_handshake_then_stream_on_bootloader_port(self, no_sleep):
        app = FakeTransport(port="/dev/ttyACM0", start_open=True)
        boot = FakeTransport(port="/dev/ttyACM1")
        sink = EventSink()
        handshake = BootloaderHandshake(BootloaderConfig(settle_delay=0), sleep=no_sleep)
        orchestrator = FlashOrchestrator(
            handshake=handshake,
            reenumerate=lambda: boot,
            on_event=sink,
            sleep=no_sleep,
        )
        connection = ConnectionState(app)

        result = orchestrator.flash(_image(600), connection, UF2Framed(256))

        assert result.ok
        assert app.opens == [1200]
        assert app.writes == []
        assert len(boot.writes) == 3
        assert boot.opens == [115200]
        assert not boot.is_open
        assert connection.transport is app
        assert sink.phases()[:3] == [
            FlashPhase.PREPARING,
            FlashPhase.ENTERING_BOOTLOADER,
            FlashPhase.STREAMING,
        ]
        assert FlashPhase.EXITING_BOOTLOADER in sink.phases()
        assert sink.phases()[-1] is FlashPhase.COMPLETED

    def test_handshake_failure_becomes_failed_result(self, no_sleep):
        app = FakeTransport(fail_open=True)
        sink = EventSink()
        orchestrator = FlashOrchestrator(
            handshake=BootloaderHandshake(BootloaderConfig(settle_delay=0), sleep=no_sleep),
            on_event=sink,
        )
        result = orchestrator.flash(_image(10), ConnectionState(app), UF2Framed())
        assert not result.ok
        assert "triggering" in result.reason
        assert sink.terminal()[0].phase is FlashPhase.FAILED
        assert orchestrator.handshake.phase.value == "application"

    def test_write_failure_on_bootloader_port_closes_it(self, no_sleep):
        app = FakeTransport(port="/dev/ttyACM0")
        boot = FakeTransport(port="/dev/ttyACM1", fail_on_write=0)
        orchestrator = FlashOrchestrator(
            handshake=BootloaderHandshake(BootloaderConfig(settle_delay=0), sleep=no_sleep),
            reenumerate=lambda: boot,
        )
        connection = ConnectionState(app)
        result = orchestrator.flash(_image(10), connection, UF2Framed())
        assert result.failed_block == 0
        assert not boot.is_open
        assert connection.transport is app
