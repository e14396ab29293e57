"""
GUID helpers for matching Plex metadata against Sonarr series.

Plex reports identifiers as ``tvdb://12345``, ``imdb://tt0944947`` or, for
libraries still on the legacy agents, ``com.plexapp.agents.thetvdb://12345?lang=en``.
Everything is normalized to ``provider:id`` before comparison.
"""
import json
import re
from typing import Iterable, List, Optional, Union

_PAT_LEGACY_TVDB = re.compile(r"^(?:com\.plexapp\.agents\.thetvdb|thetvdb)://(\d+)", re.I)
_PAT_LEGACY_IMDB = re.compile(r"^com\.plexapp\.agents\.imdb://(tt\d+)", re.I)

GuidInput = Union[str, Iterable[str], None]


def normalize_guid(guid: str) -> str:
    """tvdb://123 -> tvdb:123, lowercased"""
    guid = guid.strip()
    legacy = _PAT_LEGACY_TVDB.match(guid)
    if legacy:
        return f"tvdb:{legacy.group(1)}"
    legacy = _PAT_LEGACY_IMDB.match(guid)
    if legacy:
        return f"imdb:{legacy.group(1).lower()}"
    return guid.lower().replace("://", ":")


def parse_guids(guids: GuidInput) -> List[str]:
    """
    Parse GUIDs from a list, a JSON array string or a comma-separated string.

    Returns normalized, de-duplicated GUIDs in their original order.
    """
    if guids is None:
        return []

    if isinstance(guids, str):
        raw = guids.strip()
        if not raw:
            return []
        items = None
        if raw.startswith("["):
            try:
                decoded = json.loads(raw)
                if isinstance(decoded, list):
                    items = [str(g) for g in decoded]
            except ValueError:
                items = None
        if items is None:
            items = raw.split(",")
    else:
        items = [str(g) for g in guids if g is not None]

    result = []
    seen = set()
    for item in items:
        if not item or not item.strip():
            continue
        normalized = normalize_guid(item)
        if normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def extract_typed_guid(guids: GuidInput, prefix: str) -> Optional[str]:
    """First normalized GUID starting with prefix (e.g. 'tvdb:'), or None"""
    for guid in parse_guids(guids):
        if guid.startswith(prefix):
            return guid
    return None


def extract_tvdb_id(guids: GuidInput) -> int:
    """TVDB id as int, 0 if none found or not numeric"""
    guid = extract_typed_guid(guids, "tvdb:")
    if not guid:
        return 0
    value = guid.split(":", 1)[1]
    return int(value) if value.isdigit() else 0


def extract_imdb_id(guids: GuidInput) -> Optional[str]:
    """IMDB id in Sonarr's 'tt1234567' form, or None"""
    guid = extract_typed_guid(guids, "imdb:")
    if not guid:
        return None
    value = guid.split(":", 1)[1]
    digits = value[2:] if value.startswith("tt") else value
    if not digits.isdigit():
        return None
    return f"tt{digits}"
