"""Team name normalization and fixture identity helpers."""
import re
from datetime import datetime, timezone

from unidecode import unidecode


def normalize_team_name(name: str) -> str:
    """Lowercase, fold accents, strip punctuation and collapse spaces.

    "Atlético Madrid" -> "atletico madrid", "St. Pauli" -> "st pauli".
    """
    if not name:
        return ""
    name = unidecode(name).lower()
    name = re.sub(r"[^a-z0-9 ]", "", name)
    name = re.sub(r"\s+", " ", name)
    return name.strip()


def teams_match(requested: str, found: str) -> bool:
    """Check whether a name a source returned refers to the requested team.

    One normalized name must contain the other, so "Real Madrid" matches
    "Real Madrid CF" while "Chelsea" never matches "Real Madrid".
    """
    r = normalize_team_name(requested)
    f = normalize_team_name(found)
    if not r or not f:
        return False
    return r in f or f in r


def fixture_matches(home: str, away: str, found_home: str, found_away: str) -> bool:
    """Both sides of a fixture must match, in order."""
    return teams_match(home, found_home) and teams_match(away, found_away)


def compact_name(name: str) -> str:
    """Normalized name with spaces removed, used for search-result text matching."""
    return normalize_team_name(name).replace(" ", "")


def mentions_fixture(text: str, home_team: str, away_team: str) -> bool:
    """Does a search result / link text name both teams?"""
    haystack = compact_name(text)
    home, away = compact_name(home_team), compact_name(away_team)
    if not haystack or not home or not away:
        return False
    return home in haystack and away in haystack


def make_external_id(home_team: str, away_team: str, start_time: datetime) -> str:
    """Stable event key: team names plus the calendar date of kick-off.

    The time of day is not part of the key, so a re-scraped fixture whose
    kick-off estimate moved still maps to the same row.

    Aware kick-off times are converted to UTC first; naive ones are taken
    as UTC already.
    """
    if start_time.tzinfo is not None:
        start_time = start_time.astimezone(timezone.utc)
    return f"{compact_name(home_team)}-vs-{compact_name(away_team)}-{start_time.date().isoformat()}"
