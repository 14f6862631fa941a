import pytest

import spotify_client

PLAYLIST_ID = "37i9dQZF1DXcBWIGoYBM5M"


@pytest.mark.parametrize(
    "url",
    [
        f"https://open.spotify.com/playlist/{PLAYLIST_ID}",
        f"https://open.spotify.com/playlist/{PLAYLIST_ID}?si=abc123&pt=xyz",
        f"https://open.spotify.com/intl-en/playlist/{PLAYLIST_ID}",
        f"https://open.spotify.com/intl-ms/playlist/{PLAYLIST_ID}?si=1",
        f"spotify:playlist:{PLAYLIST_ID}",
        f"https://spotify.com/playlist/{PLAYLIST_ID}",
        f"  https://open.spotify.com/playlist/{PLAYLIST_ID}  ",
    ],
)
def test_accepted_shapes_extract_same_id(url):
    result = spotify_client.validate_playlist_url(url)
    assert result.is_valid
    assert result.playlist_id == PLAYLIST_ID
    assert result.error is None


@pytest.mark.parametrize(
    "url",
    [
        "https://open.spotify.com/album/4aawyAB9vmqN3uQ7FjRGTy",
        "https://open.spotify.com/track/11dFghVXANMlKmJXsNCbNl",
        f"https://open.spotify.com/playlist/{PLAYLIST_ID}/tracks",
        "https://youtube.com/playlist?list=PL123",
        "spotify:album:4aawyAB9vmqN3uQ7FjRGTy",
        "not a url at all",
    ],
)
def test_non_matching_strings_are_rejected(url):
    result = spotify_client.validate_playlist_url(url)
    assert not result.is_valid
    assert result.playlist_id is None
    assert result.error == spotify_client.INVALID_URL_MESSAGE


@pytest.mark.parametrize("value", [None, "", 42, ["https://open.spotify.com"], {}])
def test_missing_or_non_string_input(value):
    result = spotify_client.validate_playlist_url(value)
    assert not result.is_valid
    assert result.error == spotify_client.MISSING_URL_MESSAGE
