"""Tests for heart_rate.py -- 0x2A37 parsing and feeding a session."""

import struct

import pytest

from flowsense.heart_rate import feed_measurement, parse_heart_rate

RR_PRESENT = 0x10
CONTACT_SUPPORTED = 0x02
CONTACT_DETECTED = 0x04
ENERGY_PRESENT = 0x08
HR_UINT16 = 0x01


def measurement(flags: int, hr: int, *rr_raw: int, energy: int | None = None) -> bytearray:
    """Build a Heart Rate Measurement payload."""
    data = bytearray([flags])
    data += struct.pack("<H", hr) if flags & HR_UINT16 else bytes([hr])
    if energy is not None:
        data += struct.pack("<H", energy)
    for raw in rr_raw:
        data += struct.pack("<H", raw)
    return data


class FakeSession:
    """Records submit_* calls in order."""

    def __init__(self) -> None:
        self.calls = []

    def submit_heart_rate(self, bpm, timestamp=None):
        self.calls.append(("hr", bpm, timestamp))
        return True

    def submit_interval(self, rr_ms, observed_at=None):
        self.calls.append(("rr", rr_ms, observed_at))
        return True


class TestParseHeartRate:
    def test_uint8_hr_only(self):
        result = parse_heart_rate(measurement(0x00, 64))
        assert result["hr_bpm"] == 64
        assert result["rr_intervals_ms"] == []
        assert result["energy_expended_kj"] is None
        assert result["sensor_contact"] is None

    def test_uint16_hr(self):
        assert parse_heart_rate(measurement(HR_UINT16, 310))["hr_bpm"] == 310

    @pytest.mark.parametrize(
        "flags, expected",
        [
            (CONTACT_SUPPORTED | CONTACT_DETECTED, True),
            (CONTACT_SUPPORTED, False),
            (CONTACT_DETECTED, None),
        ],
    )
    def test_sensor_contact(self, flags, expected):
        assert parse_heart_rate(measurement(flags, 70))["sensor_contact"] is expected

    def test_rr_in_1024ths_converted_to_ms(self):
        result = parse_heart_rate(measurement(RR_PRESENT, 70, 1024, 512))
        assert result["rr_intervals_ms"] == [1000.0, 500.0]

    def test_rr_rounded_to_tenth(self):
        result = parse_heart_rate(measurement(RR_PRESENT, 70, 819))
        assert result["rr_intervals_ms"] == [799.8]

    def test_energy_precedes_rr(self):
        data = measurement(HR_UINT16 | ENERGY_PRESENT | RR_PRESENT, 88, 870, energy=120)
        result = parse_heart_rate(data)
        assert result["hr_bpm"] == 88
        assert result["energy_expended_kj"] == 120
        assert len(result["rr_intervals_ms"]) == 1

    def test_trailing_odd_byte_ignored(self):
        data = measurement(RR_PRESENT, 70, 1024) + bytearray([0x01])
        assert parse_heart_rate(data)["rr_intervals_ms"] == [1000.0]


class TestFeedMeasurement:
    def test_hr_then_rr_backdated(self):
        session = FakeSession()
        flags = RR_PRESENT | CONTACT_SUPPORTED | CONTACT_DETECTED
        feed_measurement(session, measurement(flags, 72, 1024, 512), received_at=100.0)
        assert session.calls == [
            ("hr", 72.0, 100.0),
            ("rr", 1000.0, pytest.approx(99.5)),
            ("rr", 500.0, 100.0),
        ]

    def test_no_contact_submits_nothing(self):
        session = FakeSession()
        result = feed_measurement(
            session, measurement(RR_PRESENT | CONTACT_SUPPORTED, 72, 1024), 5.0
        )
        assert result["sensor_contact"] is False
        assert session.calls == []

    def test_zero_hr_skipped_but_rr_kept(self):
        session = FakeSession()
        feed_measurement(session, measurement(RR_PRESENT, 0, 1024), 5.0)
        assert session.calls == [("rr", 1000.0, 5.0)]

    def test_truncated_payload_returns_none(self):
        session = FakeSession()
        assert feed_measurement(session, bytearray([HR_UINT16, 0x40]), 5.0) is None
        assert feed_measurement(session, bytearray(), 5.0) is None
        assert session.calls == []
