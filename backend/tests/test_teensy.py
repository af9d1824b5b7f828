import threading
import time

import pytest

from drivers.teensy import (
    EXIT_FRAME,
    FLUSH_FRAME,
    MAX_PIXEL_INDEX,
    START_FRAME,
    CartesianPixelSurface,
    LinkError,
    PixelSurface,
    TeensyOutput,
    decode_frame,
    encode_pixel,
    parse_stream,
)


def test_pixel_frame_layout():
    # index 0 goes out as word 2, color little-endian
    assert encode_pixel(0, 0x123456) == b"\x02\x00\x56\x34\x12"
    assert encode_pixel(0x100, 0xFF0000) == b"\x02\x01\x00\x00\xff"


def test_pixel_round_trip_at_range_edges():
    for index in (0, 1, 253, 254, 255, 256, 1199, MAX_PIXEL_INDEX):
        for color in (0x000000, 0x111111, 0xFFFFFF):
            assert decode_frame(encode_pixel(index, color)) == ("pixel", index, color)


def test_pixel_round_trip_across_index_range():
    indices = list(range(0, MAX_PIXEL_INDEX + 1, 97)) + [MAX_PIXEL_INDEX]
    colors = (0x000000, 0x0000FF, 0x00FF00, 0xFF0000, 0x123456, 0xFFFFFF)
    for index in indices:
        for color in colors:
            frame = encode_pixel(index, color)
            assert len(frame) == 5
            assert decode_frame(frame) == ("pixel", index, color)


def test_highest_words_are_not_addressable():
    # index + 2 would overflow the u16 word
    for index in (0xFFFE, 0xFFFF):
        with pytest.raises(ValueError):
            encode_pixel(index, 0)


def test_pixel_out_of_range_rejected():
    with pytest.raises(ValueError):
        encode_pixel(-1, 0)
    with pytest.raises(ValueError):
        encode_pixel(MAX_PIXEL_INDEX + 1, 0)
    with pytest.raises(ValueError):
        encode_pixel(0, 0x1000000)


def test_control_frames_decode():
    assert decode_frame(START_FRAME) == ("start",)
    assert decode_frame(EXIT_FRAME) == ("exit",)
    assert decode_frame(FLUSH_FRAME) == ("flush",)
    with pytest.raises(ValueError):
        decode_frame(b"\x05\x00\x00")


def test_session_is_start_frames_exit(teensy, link):
    teensy.start()
    surface = PixelSurface(teensy)
    surface.set_pixel(7, 0x00FF00)
    surface.flush()
    teensy.drain()
    teensy.stop()

    assert parse_stream(bytes(link.written)) == [
        ("start",),
        ("pixel", 7, 0x00FF00),
        ("flush",),
        ("exit",),
    ]
    assert not link.is_open
    assert not teensy.enabled


def test_drain_is_idempotent(teensy, link):
    teensy.start()
    PixelSurface(teensy).set_pixel(3, 0xABCDEF)

    assert teensy.drain() == len(START_FRAME) + 5
    written = bytes(link.written)
    assert teensy.drain() == 0
    assert bytes(link.written) == written
    assert teensy.queued == 0


def test_drain_on_closed_link_discards_queue(teensy, link):
    PixelSurface(teensy).set_pixel(0, 0x010101)
    assert teensy.queued == 1
    assert teensy.drain() == 0
    assert teensy.queued == 0
    assert link.written == bytearray()


def test_stop_writes_remaining_frames_before_exit(teensy, link):
    teensy.start()
    PixelSurface(teensy).set_pixel(1, 0x000001)
    teensy.stop()

    frames = parse_stream(bytes(link.written))
    assert frames[0] == ("start",)
    assert frames[-1] == ("exit",)
    assert ("pixel", 1, 0x000001) in frames


def test_start_and_stop_are_idempotent(teensy, link):
    teensy.start()
    teensy.start()
    teensy.stop()
    teensy.stop()
    assert bytes(link.written) == START_FRAME + EXIT_FRAME


def test_open_failure_raises_link_error(teensy, link):
    link.fail_open = True
    with pytest.raises(LinkError):
        teensy.start()
    assert not teensy.enabled


def test_write_failure_raises_link_error_and_abort_closes(teensy, link):
    teensy.start()
    link.fail_write = True
    with pytest.raises(LinkError):
        teensy.drain()

    teensy.abort()
    assert not teensy.enabled
    assert not link.is_open
    assert teensy.queued == 0


def test_link_error_is_an_os_error():
    assert issubclass(LinkError, OSError)


def test_output_thread_writes_and_stops_cleanly(link):
    teensy = TeensyOutput("/dev/ttyTEST", separate_thread=True, link=link)
    teensy.start()
    PixelSurface(teensy).set_pixel(2, 0x222222)

    deadline = time.monotonic() + 2.0
    while len(link.written) < len(START_FRAME) + 5 and time.monotonic() < deadline:
        time.sleep(0.01)
    teensy.stop()

    assert parse_stream(bytes(link.written)) == [
        ("start",),
        ("pixel", 2, 0x222222),
        ("exit",),
    ]


def test_concurrent_producers_lose_and_repeat_nothing(link):
    producers, per_producer = 4, 250
    teensy = TeensyOutput("/dev/ttyTEST", separate_thread=True, link=link)
    teensy.start()
    ready = threading.Barrier(producers)

    def produce(p):
        ready.wait()
        for k in range(per_producer):
            teensy.enqueue(encode_pixel(p * per_producer + k, k))

    threads = [threading.Thread(target=produce, args=(p,)) for p in range(producers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    teensy.stop()

    frames = parse_stream(bytes(link.written))
    assert frames[0] == ("start",)
    assert frames[-1] == ("exit",)
    pixels = [index for _, index, _ in frames[1:-1]]
    assert sorted(pixels) == list(range(producers * per_producer))
    for p in range(producers):
        mine = [i for i in pixels if i // per_producer == p]
        assert mine == sorted(mine)


def test_output_thread_aborts_on_link_failure(link):
    teensy = TeensyOutput("/dev/ttyTEST", separate_thread=True, link=link)
    teensy.start()
    link.fail_write = True
    PixelSurface(teensy).set_pixel(2, 0x222222)

    deadline = time.monotonic() + 2.0
    while teensy.enabled and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not teensy.enabled
    assert not link.is_open
    teensy.stop()


def test_cartesian_surface_is_row_major(teensy):
    surface = CartesianPixelSurface(teensy, width=3, height=2)
    surface.set_xy(2, 1, 0x0000FF)
    assert decode_frame(teensy._queue[-1]) == ("pixel", 5, 0x0000FF)

    with pytest.raises(ValueError):
        surface.set_xy(3, 0, 0)
    with pytest.raises(ValueError):
        surface.set_xy(0, 2, 0)


def test_cartesian_surface_rejects_oversized_grid(teensy):
    with pytest.raises(ValueError):
        CartesianPixelSurface(teensy, width=300, height=300)
