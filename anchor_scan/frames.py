#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Eddystone frame decoding for radio observations."""

from dataclasses import dataclass
from typing import Optional

# Eddystone service UUID (16-bit 0xFEAA) in the forms bleak may report it
EDDYSTONE_SERVICE_UUID = "0000feaa-0000-1000-8000-00805f9b34fb"
_EDDYSTONE_KEYS = (EDDYSTONE_SERVICE_UUID, "feaa")

DEFAULT_NAMESPACE = "76656C6176752E636F6D"

_FRAME_TYPE_UID = 0x00
_UID_MIN_LENGTH = 18
_NAMESPACE_SLICE = slice(2, 12)
_INSTANCE_SLICE = slice(12, 18)


@dataclass
class Observation:
    """One advertisement as delivered by the radio."""
    address: str
    name: Optional[str]
    rssi: int
    service_data: Optional[bytes] = None
    manufacturer_data: Optional[bytes] = None


@dataclass
class DecodedFrame:
    details: str
    is_eddystone: bool = False
    namespace: Optional[str] = None
    instance: Optional[str] = None


def eddystone_payload(service_data: Optional[dict]) -> Optional[bytes]:
    """Pick the Eddystone service data out of a bleak service_data mapping."""
    if not service_data:
        return None
    for uuid, data in service_data.items():
        if uuid.lower() in _EDDYSTONE_KEYS:
            return bytes(data)
    return None


def manufacturer_payload(manufacturer_data: Optional[dict]) -> Optional[bytes]:
    """Rebuild the raw manufacturer-specific field (company id LE + data).

    bleak splits the company identifier off into the mapping key; only the
    first entry is kept since the payload is only ever shown, never matched.
    """
    if not manufacturer_data:
        return None
    company_id, data = next(iter(manufacturer_data.items()))
    return company_id.to_bytes(2, "little") + bytes(data)


def normalize_namespace(namespace: str) -> str:
    """Upper-case a namespace hex string, accepting 0x and separators.

    Raises ValueError if the result is not 10 bytes of hex.
    """
    s = namespace.strip()
    if s.lower().startswith("0x"):
        s = s[2:]
    s = s.replace(":", "").replace("-", "").replace(" ", "")
    if len(s) != 20:
        raise ValueError(
            f"Namespace must be exactly 10 bytes (20 hex chars), got {len(s)} hex chars")
    try:
        bytes.fromhex(s)
    except ValueError:
        raise ValueError(f"Namespace contains invalid hex characters: {namespace}")
    return s.upper()


def decode_frame(service_data: Optional[bytes],
                 manufacturer_data: Optional[bytes] = None,
                 namespace: str = DEFAULT_NAMESPACE) -> DecodedFrame:
    """Decode an Eddystone UID frame into its instance identifier.

    Only UID frames (type 0x00, at least 18 bytes) whose namespace equals
    *namespace* yield an instance.  Everything else, including absent
    service data, decodes to a frame without an instance; manufacturer data
    is only turned into a description.  Never raises.
    """
    if service_data is None:
        mfr = manufacturer_data.hex().upper() if manufacturer_data else "N/A"
        return DecodedFrame(details=f"Manuf. Data: {mfr}")

    frame = DecodedFrame(details=f"Eddystone Service: {service_data.hex().upper()}",
                         is_eddystone=True)
    if len(service_data) < _UID_MIN_LENGTH or service_data[0] != _FRAME_TYPE_UID:
        return frame

    frame.namespace = service_data[_NAMESPACE_SLICE].hex().upper()
    if frame.namespace == namespace.upper():
        frame.instance = service_data[_INSTANCE_SLICE].hex().upper()
    return frame


def build_uid_frame(namespace: str, instance: str, tx_power: int = -20) -> bytes:
    """Encode an Eddystone UID frame, the inverse of decode_frame()."""
    return (bytes([_FRAME_TYPE_UID, tx_power & 0xFF])
            + bytes.fromhex(namespace)
            + bytes.fromhex(instance)
            + b"\x00\x00")
