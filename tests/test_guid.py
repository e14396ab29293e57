# tests/test_guid.py
from rollarr.utils.guid import (
    extract_imdb_id,
    extract_tvdb_id,
    extract_typed_guid,
    normalize_guid,
    parse_guids,
)


def test_normalize_modern_and_legacy_guids():
    assert normalize_guid("tvdb://121361") == "tvdb:121361"
    assert normalize_guid("IMDB://tt0944947") == "imdb:tt0944947"
    assert normalize_guid("com.plexapp.agents.thetvdb://121361?lang=en") == "tvdb:121361"
    assert normalize_guid("com.plexapp.agents.imdb://tt0944947?lang=en") == "imdb:tt0944947"


def test_parse_guids_accepts_lists_json_and_csv():
    expected = ["tvdb:1", "imdb:tt2"]
    assert parse_guids(["tvdb://1", "imdb://tt2"]) == expected
    assert parse_guids('["tvdb://1", "imdb://tt2"]') == expected
    assert parse_guids("tvdb://1, imdb://tt2") == expected


def test_parse_guids_drops_empty_and_duplicates():
    assert parse_guids(["tvdb://1", "", None, "TVDB://1"]) == ["tvdb:1"]
    assert parse_guids(None) == []
    assert parse_guids("  ") == []


def test_extract_tvdb_id():
    assert extract_tvdb_id(["plex://show/5d9c", "tvdb://121361"]) == 121361
    assert extract_tvdb_id(["imdb://tt0944947"]) == 0
    assert extract_tvdb_id(["tvdb://abc"]) == 0
    assert extract_tvdb_id([]) == 0


def test_extract_imdb_id_after_normalisation():
    guids = ["plex://show/5d9c", "tvdb://121361", "imdb://tt0944947"]
    assert extract_imdb_id(guids) == "tt0944947"
    assert extract_imdb_id(["com.plexapp.agents.imdb://tt0944947"]) == "tt0944947"
    assert extract_imdb_id(["tvdb://1"]) is None


def test_extract_typed_guid_returns_first_match():
    assert extract_typed_guid(["tmdb://5", "tmdb://6"], "tmdb:") == "tmdb:5"
    assert extract_typed_guid(["tmdb://5"], "tvdb:") is None
