"""Deterministic playlist statistics used for roast prompts and stored metadata."""
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from runtime import ERROR_TEXT, ValidationError
from spotify_client import PlaylistData

LOCAL_MUSIC_KEYWORDS = (
    "malaysia",
    "malaysian",
    "kl",
    "kuala lumpur",
    "penang",
    "yuna",
    "siti nurhaliza",
    "sheila on 7",
    "agnez mo",
    "raisa",
    "afgan",
    "isyana sarasvati",
    "tulus",
    "jakarta",
    "bandung",
    "singapore",
    "thai",
    "thailand",
    "indonesia",
    "indonesian",
)

MAINSTREAM_THRESHOLD = 85
ARTIST_SPAM_THRESHOLD = 5
SAMPLE_TRACK_COUNT = 3
DEFAULT_FALLBACK_ROAST = "Wah, cannot generate roast lah!"


class EmptyPlaylistError(ValidationError):
    pass


@dataclass(frozen=True)
class Analysis:
    playlist_name: str
    track_count: int
    analysed_track_count: int  # fetched tracks; denominator for ratios
    avg_popularity: int
    local_music_count: int
    explicit_count: int
    unique_artists: int
    top_artist: Optional[str]
    top_artist_count: int
    is_very_mainstream: bool
    same_artist_spam: bool
    zero_local_music: bool
    sample_tracks: str

    @property
    def top_artist_name(self) -> Optional[str]:
        if not self.top_artist:
            return None
        return self.top_artist.split(" (")[0]


def _round_half_up(value: float) -> int:
    # Math.round semantics; Python's round() would send 16.5 to 16.
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def _is_local_artist(artist: str) -> bool:
    folded = artist.casefold()
    return any(keyword in folded for keyword in LOCAL_MUSIC_KEYWORDS)


def analyze(playlist: PlaylistData) -> Analysis:
    tracks = playlist.tracks
    if not tracks:
        raise EmptyPlaylistError(ERROR_TEXT["empty_playlist"])

    avg_popularity = _round_half_up(sum(t.popularity for t in tracks) / len(tracks))
    local_music_count = sum(
        1 for t in tracks if any(_is_local_artist(a) for a in t.artists)
    )
    explicit_count = sum(1 for t in tracks if t.explicit)

    artist_counts: Dict[str, int] = {}
    for track in tracks:
        for artist in track.artists:
            artist_counts[artist] = artist_counts.get(artist, 0) + 1

    top_artist: Optional[str] = None
    top_count = 0
    for artist, count in artist_counts.items():
        if count > top_count:
            top_artist, top_count = artist, count

    sample = ", ".join(
        f'"{t.name}" by {", ".join(t.artists)}' for t in tracks[:SAMPLE_TRACK_COUNT]
    )

    return Analysis(
        playlist_name=playlist.name,
        track_count=playlist.track_count,
        analysed_track_count=len(tracks),
        avg_popularity=avg_popularity,
        local_music_count=local_music_count,
        explicit_count=explicit_count,
        unique_artists=len(artist_counts),
        top_artist=f"{top_artist} ({top_count} songs)" if top_artist else None,
        top_artist_count=top_count,
        is_very_mainstream=avg_popularity > MAINSTREAM_THRESHOLD,
        same_artist_spam=top_count > ARTIST_SPAM_THRESHOLD,
        zero_local_music=local_music_count == 0,
        sample_tracks=sample,
    )


def generate_roasting_angles(analysis: Analysis) -> List[str]:
    angles: List[str] = []

    if analysis.is_very_mainstream:
        angles.append(
            f"Super mainstream taste ({analysis.avg_popularity}/100 popularity)"
        )
    if analysis.zero_local_music:
        angles.append("Zero Malaysian artists (where's your cultural pride?)")
    if analysis.same_artist_spam:
        angles.append(f"{analysis.top_artist} - variety much?")
    if analysis.explicit_count > analysis.analysed_track_count * 0.7:
        angles.append(
            f"{analysis.explicit_count} explicit songs - parents will be shocked"
        )
    if analysis.unique_artists < analysis.analysed_track_count * 0.3:
        angles.append("Very limited artist variety - stuck in a loop much?")
    if analysis.track_count < 10:
        angles.append("Playlist shorter than KL traffic jam - where are the songs?")
    if analysis.track_count > 100:
        angles.append(
            "Playlist longer than North-South Highway - who has time for this?"
        )

    return angles


def get_cultural_diversity(analysis: Analysis) -> str:
    if analysis.local_music_count == 0:
        return "Western-only"
    if analysis.local_music_count < analysis.analysed_track_count * 0.1:
        return "Minimal local representation"
    if analysis.local_music_count < analysis.analysed_track_count * 0.3:
        return "Some local flavor"
    return "Good cultural mix"


def fallback_templates(analysis: Analysis) -> List[str]:
    vibe = "mainstream" if analysis.is_very_mainstream else "mixed"
    local = (
        "Zero local artists some more"
        if analysis.zero_local_music
        else "At least got some Malaysian vibes"
    )
    repeat = (
        f"got {analysis.top_artist_name} on repeat"
        if analysis.same_artist_spam
        else "quite variety ah"
    )
    predictable = "very predictable" if analysis.is_very_mainstream else "not bad"
    radio = (
        "Top 40 radio station"
        if analysis.avg_popularity > 90
        else "Spotify Discover Weekly"
    )
    saved = (
        "saved by local music!"
        if analysis.local_music_count > 0
        else "so Western centric!"
    )
    return [
        f'Aiyo "{analysis.playlist_name}" with {analysis.track_count} songs so '
        f"{vibe} lah! {local} 😅",
        f"Wah your playlist {repeat} - {predictable} taste lah!",
        f'"{analysis.playlist_name}" screams {radio} vibes - {saved} 🎵',
    ]


def generate_fallback_roast(
    analysis: Analysis, rng: Optional[random.Random] = None
) -> str:
    """Pick one of the canned roasts; ``rng`` makes the choice reproducible."""
    templates = fallback_templates(analysis)
    source = rng or random
    index = int(source.random() * len(templates))
    if 0 <= index < len(templates) and templates[index]:
        return templates[index]
    return DEFAULT_FALLBACK_ROAST


def build_playlist_metadata(
    analysis: Analysis, name: str, owner: str, description: str = ""
) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "owner": owner,
        "track_count": analysis.track_count,
        "avg_popularity": analysis.avg_popularity,
        "local_music_count": analysis.local_music_count,
        "explicit_count": analysis.explicit_count,
        "unique_artists": analysis.unique_artists,
        "top_artist": analysis.top_artist,
        "is_very_mainstream": analysis.is_very_mainstream,
        "cultural_diversity": get_cultural_diversity(analysis),
        "roasting_angles": generate_roasting_angles(analysis),
    }
