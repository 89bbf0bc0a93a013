"""Device presets for viewport emulation.

Static, read-only lookup data shared by every request. ``resolve_device_name``
maps loose caller spellings ("iPhone", "andriod", "1080p") onto preset keys.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

_IOS_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 18_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/18.0 Mobile/15E148 Safari/604.1"
)
_IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 18_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/18.0 Mobile/15E148 Safari/604.1"
)
_ANDROID_UA = (
    "Mozilla/5.0 (Linux; Android 15; {model}) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/130.0.0.0 Mobile Safari/537.36"
)


@dataclass(frozen=True)
class ViewportPreset:
    width: int
    height: int
    device_scale_factor: float = 1
    is_mobile: bool = False
    has_touch: bool = False
    is_landscape: bool = False
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class DeviceProfile:
    name: str
    description: str
    preset: ViewportPreset


VIEWPORT_PRESETS: Dict[str, DeviceProfile] = {
    # Desktop
    "desktop-fhd": DeviceProfile("Desktop FHD", "Standard 1920x1080 display", ViewportPreset(1920, 1080)),
    "desktop-hd": DeviceProfile("Desktop HD", "Standard 1280x720 display", ViewportPreset(1280, 720)),
    "desktop-4k": DeviceProfile("Desktop 4K", "3840x2160 display", ViewportPreset(3840, 2160, 2)),
    "macbook-pro-16": DeviceProfile("MacBook Pro 16", "16-inch Retina display", ViewportPreset(1728, 1117, 2)),
    "macbook-air": DeviceProfile("MacBook Air 15", "15-inch Retina display", ViewportPreset(1440, 932, 2)),
    # Tablets
    "ipad-pro": DeviceProfile(
        "iPad Pro 13", "iPad Pro 13-inch M4",
        ViewportPreset(1032, 1376, 2, True, True, user_agent=_IPAD_UA),
    ),
    "ipad-air": DeviceProfile(
        "iPad Air 13", "iPad Air 13-inch M2",
        ViewportPreset(1024, 1366, 2, True, True, user_agent=_IPAD_UA),
    ),
    "surface-pro": DeviceProfile(
        "Surface Pro", "Surface Pro 11",
        ViewportPreset(1440, 960, 2, False, True),
    ),
    # Phones
    "iphone-16-pro": DeviceProfile(
        "iPhone 16 Pro", "iPhone 16 Pro",
        ViewportPreset(402, 874, 3, True, True, user_agent=_IOS_UA),
    ),
    "iphone-14": DeviceProfile(
        "iPhone 14", "iPhone 14",
        ViewportPreset(390, 844, 3, True, True, user_agent=_IOS_UA),
    ),
    "pixel-9": DeviceProfile(
        "Pixel 9", "Google Pixel 9",
        ViewportPreset(412, 923, 2.625, True, True, user_agent=_ANDROID_UA.format(model="Pixel 9")),
    ),
    "galaxy-s24": DeviceProfile(
        "Galaxy S24", "Samsung Galaxy S24",
        ViewportPreset(360, 780, 3, True, True, user_agent=_ANDROID_UA.format(model="SM-S921B")),
    ),
}

# Generic names map to the latest model of their class.
DEVICE_ALIASES: Dict[str, str] = {
    "mobile": "iphone-16-pro",
    "phone": "iphone-16-pro",
    "smartphone": "iphone-16-pro",
    "tablet": "ipad-pro",
    "desktop": "desktop-fhd",
    "laptop": "macbook-pro-16",
    "pc": "desktop-fhd",
    "iphone": "iphone-16-pro",
    "iphone16": "iphone-16-pro",
    "iphone 16": "iphone-16-pro",
    "iphone 16 pro": "iphone-16-pro",
    "iphone14": "iphone-14",
    "iphone 14": "iphone-14",
    "ipad": "ipad-pro",
    "ipadpro": "ipad-pro",
    "ipad pro": "ipad-pro",
    "ipad air": "ipad-air",
    "macbook": "macbook-pro-16",
    "macbook pro": "macbook-pro-16",
    "macbook air": "macbook-air",
    "android": "pixel-9",
    "pixel": "pixel-9",
    "pixel9": "pixel-9",
    "pixel 9": "pixel-9",
    "samsung": "galaxy-s24",
    "galaxy": "galaxy-s24",
    "surface": "surface-pro",
    "hd": "desktop-hd",
    "720p": "desktop-hd",
    "fullhd": "desktop-fhd",
    "full-hd": "desktop-fhd",
    "fhd": "desktop-fhd",
    "1080p": "desktop-fhd",
    "4k": "desktop-4k",
    "uhd": "desktop-4k",
    # common typos
    "iphon-16": "iphone-16-pro",
    "ipone-16": "iphone-16-pro",
    "andriod": "pixel-9",
    "pixle": "pixel-9",
}


def _clean(name: str) -> str:
    return " ".join(name.lower().split())


def resolve_device_name(name: str) -> Optional[str]:
    """Return the preset key for ``name``, or None when it is not a known device."""
    cleaned = _clean(name)
    if cleaned in VIEWPORT_PRESETS:
        return cleaned
    if cleaned in DEVICE_ALIASES:
        return DEVICE_ALIASES[cleaned]
    hyphenated = cleaned.replace(" ", "-")
    if hyphenated in VIEWPORT_PRESETS:
        return hyphenated
    return DEVICE_ALIASES.get(hyphenated)


def get_viewport_preset(name: str) -> Optional[ViewportPreset]:
    key = resolve_device_name(name)
    if key is None:
        return None
    return VIEWPORT_PRESETS[key].preset


def list_device_presets() -> List[str]:
    return list(VIEWPORT_PRESETS)
