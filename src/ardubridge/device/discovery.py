"""Serial port discovery for Arduino-compatible boards."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from serial.tools import list_ports

logger = logging.getLogger(__name__)

ARDUINO_VID = "2341"
CH340_VID = "1a86"
FTDI_VID = "0403"
KNOWN_VENDOR_IDS = frozenset({ARDUINO_VID, CH340_VID, FTDI_VID})
KNOWN_MANUFACTURERS = ("arduino", "ch340", "ftdi")
KNOWN_PATH_MARKERS = ("ttyACM", "ttyUSB", "COM")

# Arduino LLC product ids
BOARD_TYPES = {
    "0043": "Arduino Uno",
    "0001": "Arduino Uno",
    "0042": "Arduino Mega",
    "0010": "Arduino Mega",
    "8036": "Arduino Leonardo",
    "8037": "Arduino Leonardo",
    "804d": "Arduino Micro",
    "804e": "Arduino Micro",
}
GENERIC_BOARD = "Arduino Compatible"


@dataclass(slots=True)
class BoardInfo:
    """A serial port that looks like an attached Arduino board."""

    path: str
    manufacturer: str
    vendorId: Optional[str]
    productId: Optional[str]
    boardType: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _hex_id(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:04x}"


def detect_board_type(vendor_id: Optional[str], product_id: Optional[str]) -> str:
    """Name the board from its USB vendor and product ids."""
    if vendor_id == ARDUINO_VID and product_id:
        return BOARD_TYPES.get(product_id.lower(), GENERIC_BOARD)
    return GENERIC_BOARD


def is_arduino_port(path: str, manufacturer: Optional[str], vendor_id: Optional[str]) -> bool:
    """Return True when a port matches a known manufacturer, vendor id or path."""
    lowered = (manufacturer or "").lower()
    if any(marker in lowered for marker in KNOWN_MANUFACTURERS):
        return True
    if vendor_id in KNOWN_VENDOR_IDS:
        return True
    return any(marker in path for marker in KNOWN_PATH_MARKERS)


def filter_boards(ports: Iterable[Any]) -> List[BoardInfo]:
    """Convert pyserial ``ListPortInfo`` objects into Arduino board entries."""
    boards: List[BoardInfo] = []
    for port in ports:
        vendor_id = _hex_id(getattr(port, "vid", None))
        product_id = _hex_id(getattr(port, "pid", None))
        manufacturer = getattr(port, "manufacturer", None)
        if not is_arduino_port(port.device, manufacturer, vendor_id):
            continue
        boards.append(
            BoardInfo(
                path=port.device,
                manufacturer=manufacturer or "Unknown",
                vendorId=vendor_id,
                productId=product_id,
                boardType=detect_board_type(vendor_id, product_id),
            )
        )
    return boards


def detect_arduino_boards() -> List[BoardInfo]:
    """List the serial ports that look like Arduino boards.

    Enumeration failures are logged and reported as an empty list.
    """
    try:
        ports = list_ports.comports()
    except OSError as exc:
        logger.error("Error detecting Arduino boards: %s", exc)
        return []
    boards = filter_boards(ports)
    logger.debug("Detected %d Arduino board(s)", len(boards))
    return boards
