"""Serial device access: link, board discovery and firmware upload."""

from .discovery import BoardInfo, detect_arduino_boards, detect_board_type
from .link import DeviceLink
from .upload import DEFAULT_FQBN, UploadResult, upload_firmware

__all__ = [
    "DEFAULT_FQBN",
    "BoardInfo",
    "DeviceLink",
    "UploadResult",
    "detect_arduino_boards",
    "detect_board_type",
    "upload_firmware",
]
