#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""bleak-backed radio that feeds advertisements to a callback."""

import logging
import platform
import sys
from typing import Callable, Optional

try:
    from bleak import BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
    from bleak.exc import BleakError
except ImportError:
    print("Error: 'bleak' is not installed.")
    print("Install dependencies with:  pip install anchor-scan")
    sys.exit(1)

from .errors import RadioUnavailableError
from .frames import Observation, eddystone_payload, manufacturer_payload

logger = logging.getLogger(__name__)

ObservationCallback = Callable[[Observation], None]


def to_observation(device: BLEDevice, adv: AdvertisementData) -> Observation:
    return Observation(
        address=device.address,
        name=device.name or adv.local_name,
        rssi=adv.rssi,
        service_data=eddystone_payload(adv.service_data),
        manufacturer_data=manufacturer_payload(adv.manufacturer_data),
    )


class BleakRadio:
    """Start/stop wrapper around BleakScanner.

    Detection callbacks run on the event loop that started the scan, one
    at a time, so the consumer never needs a lock.
    """

    def __init__(self, adapter: Optional[str] = None):
        self.adapter = adapter
        self._scanner: Optional[BleakScanner] = None
        self._callback: Optional[ObservationCallback] = None

    @property
    def scanning(self) -> bool:
        return self._scanner is not None

    def set_callback(self, callback: ObservationCallback):
        self._callback = callback

    def _detection_callback(self, device: BLEDevice, adv: AdvertisementData):
        if self._callback is not None:
            self._callback(to_observation(device, adv))

    def _scanner_kwargs(self, allow_duplicates: bool) -> dict:
        kwargs: dict = {"detection_callback": self._detection_callback}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        if allow_duplicates and platform.system() == "Linux":
            # BlueZ drops repeated advertisements unless asked not to;
            # CoreBluetooth and WinRT report every one already.
            kwargs["bluez"] = {"filters": {"DuplicateData": True}}
        return kwargs

    async def start(self, allow_duplicates: bool = True):
        if self._scanner is not None:
            return
        scanner = BleakScanner(**self._scanner_kwargs(allow_duplicates))
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            raise RadioUnavailableError(f"Bluetooth is not available: {e}") from e
        self._scanner = scanner
        logger.debug("Radio scan started (adapter=%s)", self.adapter or "default")

    async def stop(self):
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            logger.warning("Error stopping radio scan: %s", e)
        logger.debug("Radio scan stopped")

    async def probe(self) -> bool:
        """Briefly start and stop a scan to see whether the adapter is usable."""
        if self._scanner is not None:
            return True
        try:
            await self.start(allow_duplicates=False)
        except RadioUnavailableError as e:
            logger.debug("Radio probe failed: %s", e)
            return False
        await self.stop()
        return True
