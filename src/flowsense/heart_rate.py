"""Live heart-rate source: standard BLE Heart Rate Service -> FlowSession.

Any chest strap or watch exposing the Bluetooth SIG Heart Rate service
(0x180D) pushes Heart Rate Measurement notifications (0x2A37) carrying the
current HR and, on most straps, the RR intervals measured since the last
notification.  Both are handed to a running :class:`FlowSession`; bleak
delivers notifications on its own callback context, so only the
thread-safe ``submit_*`` API is used from the handler.
"""

from __future__ import annotations

import asyncio
import struct
import time
from datetime import datetime

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from flowsense.config import EngineConfig
from flowsense.engine import FlowEngine
from flowsense.models import FlowScore, HapticCue, PersonalBaseline
from flowsense.session import FlowSession

HR_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HR_MEASUREMENT_UUID = "00002a37-0000-1000-8000-00805f9b34fb"


# ---------------------------------------------------------------------------
# Heart Rate Measurement parser (0x2A37)
# ---------------------------------------------------------------------------

_FLAG_HR_UINT16 = 0x01
_FLAG_CONTACT_SUPPORTED = 0x02
_FLAG_CONTACT_DETECTED = 0x04
_FLAG_ENERGY = 0x08
_FLAG_RR = 0x10


def parse_heart_rate(data: bytearray) -> dict:
    """Decode one Heart Rate Measurement notification.

    The engine consumes two fields: ``hr_bpm`` becomes an HR sample and
    ``rr_intervals_ms`` become sensor-measured RR intervals.
    ``sensor_contact`` is False only when the strap reports that it has lost
    skin contact, in which case the reading is not used.  Energy expended
    is decoded so the RR block is located correctly.

    Layout: flags byte, HR as uint8 or uint16, optional uint16 energy,
    then any number of uint16 RR values in 1/1024 s.

    Raises:
        IndexError, struct.error: the payload is shorter than its flags claim.
    """
    flags = data[0]
    if flags & _FLAG_HR_UINT16:
        (hr_bpm,) = struct.unpack_from("<H", data, 1)
        offset = 3
    else:
        hr_bpm = data[1]
        offset = 2

    energy_kj = None
    if flags & _FLAG_ENERGY:
        (energy_kj,) = struct.unpack_from("<H", data, offset)
        offset += 2

    rr_ms: list[float] = []
    if flags & _FLAG_RR:
        count = (len(data) - offset) // 2
        raw = struct.unpack_from(f"<{count}H", data, offset)
        rr_ms = [round(r / 1024.0 * 1000.0, 1) for r in raw]

    contact = None
    if flags & _FLAG_CONTACT_SUPPORTED:
        contact = bool(flags & _FLAG_CONTACT_DETECTED)

    return {
        "hr_bpm": hr_bpm,
        "sensor_contact": contact,
        "energy_expended_kj": energy_kj,
        "rr_intervals_ms": rr_ms,
    }


def feed_measurement(session: FlowSession, data: bytearray, received_at: float) -> dict | None:
    """Parse one notification and submit its HR and RR intervals.

    RR intervals in one notification end at *received_at*; earlier ones are
    back-dated by the durations that follow them.  Malformed payloads and
    readings without sensor contact are skipped.
    """
    try:
        hr = parse_heart_rate(data)
    except (IndexError, struct.error):
        return None
    if hr["sensor_contact"] is False:
        return hr

    if hr["hr_bpm"] > 0:
        session.submit_heart_rate(float(hr["hr_bpm"]), received_at)

    t = received_at
    stamped: list[tuple[float, float]] = []
    for rr in reversed(hr["rr_intervals_ms"]):
        stamped.append((rr, t))
        t -= rr / 1000.0
    for rr, observed_at in reversed(stamped):
        session.submit_interval(rr, observed_at)
    return hr


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


async def scan(timeout: float = 10.0) -> list[tuple[BLEDevice, AdvertisementData]]:
    """Scan for devices advertising the Heart Rate service."""
    results: list[tuple[BLEDevice, AdvertisementData]] = []

    def _callback(device: BLEDevice, adv: AdvertisementData) -> None:
        uuids = [u.lower() for u in adv.service_uuids or []]
        if HR_SERVICE_UUID not in uuids:
            return
        if not any(d.address == device.address for d, _ in results):
            results.append((device, adv))
            name = adv.local_name or device.name or "?"
            print(f"  Found: {name} [{device.address}] RSSI={adv.rssi} dBm")

    scanner = BleakScanner(detection_callback=_callback)
    print(f"Scanning for heart-rate monitors ({timeout}s)...")
    await scanner.start()
    await asyncio.sleep(timeout)
    await scanner.stop()

    if not results:
        print("No heart-rate monitors found.")
    else:
        print(f"\n{len(results)} device(s) found.")

    return results


async def find_heart_rate_monitor(timeout: float = 10.0) -> BLEDevice | None:
    """Find the first heart-rate monitor and return it."""
    results = await scan(timeout)
    if results:
        return results[0][0]
    return None


# ---------------------------------------------------------------------------
# Live session
# ---------------------------------------------------------------------------


def _print_score(score: FlowScore) -> None:
    now = datetime.now().strftime("%H:%M:%S")
    print(
        f"[{now}] Flow: {score.total:3d}  "
        f"HRV:{score.hrv_subscore:4.1f} HR:{score.hr_subscore:4.1f} "
        f"Sleep:{score.sleep_subscore:4.1f} Sub:{score.substance_subscore:4.1f}  "
        f"[{score.state.display_name}]",
        flush=True,
    )


def _print_cue(cue: HapticCue) -> None:
    print(f"  * haptic: {cue.value}", flush=True)


async def stream_flow(
    baseline: PersonalBaseline,
    address: str | None = None,
    config: EngineConfig | None = None,
    sleep_quality: float | None = None,
    substances: dict[str, float] | None = None,
    duration: float | None = None,
) -> None:
    """Connect to a heart-rate monitor and run a live flow session.

    Args:
        baseline: The user's calibration record.
        address: BLE address. If None, scans for a heart-rate monitor.
        config: Engine settings.
        sleep_quality: Last night's sleep score (0-100).
        substances: Active substance levels in mg.
        duration: Session length in seconds. None = run until Ctrl+C.
    """
    if address is None:
        device = await find_heart_rate_monitor()
        if device is None:
            return
        address = device.address

    engine = FlowEngine(
        baseline,
        config=config,
        on_score=_print_score,
        on_haptic=_print_cue,
    )
    session = FlowSession(engine)

    print(f"Connecting to {address}...")

    async with BleakClient(address) as client:
        print("Connected.")

        def _on_notification(_char: BleakGATTCharacteristic, data: bytearray) -> None:
            feed_measurement(session, data, time.time())

        await session.start(sleep_quality=sleep_quality, substances=substances)
        try:
            await client.start_notify(HR_MEASUREMENT_UUID, _on_notification)
        except Exception as e:
            print(f"Error: cannot subscribe to heart rate measurement: {e}")
            await session.stop()
            return

        print("\nStreaming flow score (Ctrl+C to stop):\n")
        try:
            if duration is None:
                while True:
                    await asyncio.sleep(1)
            else:
                await asyncio.sleep(duration)
        except asyncio.CancelledError:
            pass
        finally:
            try:
                await client.stop_notify(HR_MEASUREMENT_UUID)
            except Exception:
                pass  # best-effort cleanup
            summary = await session.stop()
            print(
                f"\n  Session: {summary.duration_seconds:.0f}s, "
                f"peak {summary.peak_flow_score}, "
                f"{summary.time_in_flow_seconds:.0f}s in flow "
                f"({summary.flow_time_percent:.0f}%)"
            )
