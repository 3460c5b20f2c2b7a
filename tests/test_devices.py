"""Tests for device labelling and snowflake ids."""

import threading

import pytest

from agora.service.devices import describe_device, device_name
from agora.service.snowflake import AGORA_EPOCH_MS, Snowflake

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


class TestDeviceName:
    def test_known_browser_and_os(self):
        assert device_name(CHROME_WINDOWS) == "Chrome on Windows"
        assert device_name(FIREFOX_LINUX) == "Firefox on Linux"

    def test_missing_user_agent(self):
        assert device_name(None) == "Unknown browser on Unknown OS"
        assert device_name("") == "Unknown browser on Unknown OS"

    def test_describe_device_keeps_raw_values(self):
        meta = describe_device(FIREFOX_LINUX, "192.0.2.7")

        assert meta.device_name == "Firefox on Linux"
        assert meta.user_agent == FIREFOX_LINUX
        assert meta.ip_address == "192.0.2.7"


class TestSnowflake:
    def test_ids_are_increasing(self):
        gen = Snowflake(worker_id=3)
        ids = [int(gen.generate()) for _ in range(2000)]

        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_worker_bits(self):
        value = int(Snowflake(worker_id=5).generate())

        assert (value >> 12) & 0x3FF == 5

    def test_timestamp_is_relative_to_epoch(self, monkeypatch):
        monkeypatch.setattr(Snowflake, "_millis", staticmethod(lambda: AGORA_EPOCH_MS + 1000))

        assert int(Snowflake().generate()) >> 22 == 1000

    def test_clock_going_backwards_does_not_repeat(self, monkeypatch):
        gen = Snowflake()
        ticks = iter([AGORA_EPOCH_MS + 50, AGORA_EPOCH_MS + 40])
        monkeypatch.setattr(gen, "_millis", lambda: next(ticks))

        first = int(gen.generate())
        second = int(gen.generate())

        assert second > first

    def test_unique_across_threads(self):
        gen = Snowflake(worker_id=1)
        results = []
        lock = threading.Lock()

        def worker():
            batch = [gen.generate() for _ in range(500)]
            with lock:
                results.extend(batch)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 2000

    def test_rejects_out_of_range_worker(self):
        with pytest.raises(ValueError):
            Snowflake(worker_id=1024)
