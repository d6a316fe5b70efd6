"""Chat platform connector interface."""

from parlor.platform.base import PlatformConnector, detect_image_type, extract_configs, split_message

__all__ = ["PlatformConnector", "detect_image_type", "extract_configs", "split_message"]
