import json
import random
from dataclasses import dataclass
from typing import Any, Optional

import boto3

from music_analysis import Analysis, generate_fallback_roast, generate_roasting_angles
from runtime import ENV_CONFIG, log

ANTHROPIC_VERSION = "bedrock-2023-05-31"
MAX_TOKENS = 200
TEMPERATURE = 0.9

STYLE_EXAMPLES = [
    "Bro your playlist same taste as every KL mall background music - basic gila lah 😂",
    "47 songs zero Yuna/SonaOne/Faizal Tahir? You Malaysian or not wei? IC mana IC? 🤣",
    "Walao 'Study Music' but 90% explicit content - studying what subject? Advanced Swearing ah? 💀",
    "Your music taste flatter than mamak roti canai at 3am bro, no flavor one! 🥞",
    "Top 40 hits only? Your Spotify algorithm thinks you're elevator music leh! 😴",
]


@dataclass(frozen=True)
class GeneratedRoast:
    text: str
    source: str
    degraded_reason: Optional[str] = None


def build_roast_prompt(analysis: Analysis) -> str:
    angles = generate_roasting_angles(analysis)
    ammunition = (
        "\n".join(f"- {angle}" for angle in angles)
        or "- Nothing stands out, roast the blandness"
    )
    examples = "\n".join(f'- "{example}"' for example in STYLE_EXAMPLES)
    return "\n\n".join(
        [
            "Eh bro, you're a Malaysian kaki who damn savage at roasting friends' "
            "music taste. No mercy one, but still can laugh together after. "
            "DESTROY this playlist with facts, not generic insults.",
            "VICTIM'S ACTUAL PLAYLIST DATA:\n"
            f'- "{analysis.playlist_name}" ({analysis.track_count} tracks)\n'
            f"- Music taste level: {analysis.avg_popularity}/100 popularity\n"
            f"- Top artist: {analysis.top_artist}\n"
            f"- Local representation: {analysis.local_music_count} Malaysian/SEA artists\n"
            f"- Explicit tracks: {analysis.explicit_count}\n"
            f"- Variety: {analysis.unique_artists}/{analysis.track_count} unique artists\n"
            f"- Sample tracks: {analysis.sample_tracks}",
            f"REAL AMMUNITION TO USE:\n{ammunition}",
            "HOW TO ROAST LIKE REAL MALAYSIAN FRIEND:\n"
            '- Use natural rojak: "lah", "wei", "walao eh", "apa doh", "gila", "siot"\n'
            "- Cultural burns: kopitiam uncle music taste, pasar malam speaker vibes, "
            "taxi driver radio, mamak late night playlist\n"
            "- Reference real Malaysian things: MRT rides, 1Utama, Pavilion, mamak stall\n"
            "- Under 180 characters - this going on Instagram story",
            f"SAVAGE EXAMPLES (study these burns):\n{examples}",
            "NOW ABSOLUTELY MURDER THIS PLAYLIST (but make people laugh):",
        ]
    )


class RoastGenerator:
    """Bedrock-backed roast writer that never raises to its caller."""

    def __init__(
        self,
        client: Any = None,
        model_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._client = client
        self.model_id = model_id or ENV_CONFIG["bedrock_model_id"]
        self._rng = rng

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "bedrock-runtime", region_name=ENV_CONFIG["bedrock_region"]
            )
        return self._client

    def invoke(self, prompt: str) -> str:
        body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "messages": [{"role": "user", "content": prompt}],
        }
        response = self.client.invoke_model(
            modelId=self.model_id,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(body),
        )
        payload = json.loads(response["body"].read())
        text = payload["content"][0]["text"].strip()
        if not text:
            raise ValueError("empty completion")
        return text

    def generate(self, analysis: Analysis) -> GeneratedRoast:
        prompt = build_roast_prompt(analysis)
        try:
            text = self.invoke(prompt)
        except Exception as exc:  # pylint: disable=broad-except
            reason = f"{type(exc).__name__}: {exc}"
            log("warning", "Bedrock roast failed, using fallback", error=reason)
            return GeneratedRoast(
                generate_fallback_roast(analysis, self._rng), "fallback", reason
            )
        log(
            "info",
            "bedrock_roast_generated",
            model_id=self.model_id,
            prompt_length_chars=len(prompt),
            roast_length_chars=len(text),
        )
        return GeneratedRoast(text, "model")
