"""Nexus Mods page URL parsing."""

import re
from dataclasses import dataclass
from urllib.parse import urlparse

NEXUS_DOMAINS = ("next.nexusmods.com", "www.nexusmods.com", "nexusmods.com")
DEFAULT_GAME_DOMAIN = "fallout76"

# Mod has no remote counterpart
NO_REMOTE_ID = -1


@dataclass
class ModInfo:
    """Parsed mod page URL information."""

    game_domain: str
    mod_id: int
    url: str


class ModParseError(Exception):
    """Raised when a mod URL cannot be parsed."""

    pass


def parse_mod_url(url: str) -> ModInfo:
    """
    Parse a Nexus Mods mod page URL.

    Supported formats:
        - https://www.nexusmods.com/{game}/mods/{id}
        - https://next.nexusmods.com/{game}/mods/{id}
        - Either format with ?tab=... query params

    Returns ModInfo with game_domain and mod_id.
    """
    parsed = urlparse(url.strip())

    if parsed.netloc not in NEXUS_DOMAINS:
        raise ModParseError(
            f"Invalid domain: {parsed.netloc}. Expected nexusmods.com"
        )

    path_match = re.match(r"^/(?:games/)?([^/]+)/mods/(\d+)", parsed.path)
    if not path_match:
        raise ModParseError(
            f"Invalid mod URL format: {url}\n"
            "Expected: https://www.nexusmods.com/{{game}}/mods/{{id}}"
        )

    game_domain = path_match.group(1)
    mod_id = int(path_match.group(2))
    normalized_url = f"https://www.nexusmods.com/{game_domain}/mods/{mod_id}"

    return ModInfo(
        game_domain=game_domain,
        mod_id=mod_id,
        url=normalized_url,
    )


def mod_id_from_url(url: str) -> int:
    """Return the Nexus mod id of `url`, or NO_REMOTE_ID if it isn't a mod page."""
    if not url:
        return NO_REMOTE_ID
    try:
        return parse_mod_url(url).mod_id
    except ModParseError:
        return NO_REMOTE_ID
