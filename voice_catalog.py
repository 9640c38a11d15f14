"""
Static catalog of selectable voices.

Shared by the Credential Broker (served at GET /api/voices) and the Realtime
Client (voice selection). Entries are immutable and never mutated at runtime.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence, Tuple


@dataclass(frozen=True)
class VoiceIdentity:
    """A selectable voice."""

    id: str
    display_name: str
    description: str
    provider_voice_name: str  # Name expected by the Realtime API, e.g. "verse"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


VOICES: Tuple[VoiceIdentity, ...] = (
    VoiceIdentity("alloy", "Alloy", "Balanced and clear", "alloy"),
    VoiceIdentity("ash", "Ash", "Warm and calm", "ash"),
    VoiceIdentity("ballad", "Ballad", "Narrative and lyrical", "ballad"),
    VoiceIdentity("coral", "Coral", "Bright and friendly", "coral"),
    VoiceIdentity("echo", "Echo", "Crisp and lively", "echo"),
    VoiceIdentity("sage", "Sage", "Calm and thoughtful", "sage"),
    VoiceIdentity("shimmer", "Shimmer", "Sparkling and energetic", "shimmer"),
    VoiceIdentity("verse", "Verse", "Expressive and dynamic", "verse"),
)

DEFAULT_VOICE_ID = "verse"

_BY_ID = {voice.id: voice for voice in VOICES}


def list_voices() -> List[VoiceIdentity]:
    """Return the catalog in display order."""
    return list(VOICES)


def get_voice(voice_id: str) -> VoiceIdentity:
    """Look up a voice by id. Raises KeyError for unknown ids."""
    try:
        return _BY_ID[voice_id]
    except KeyError:
        raise KeyError(f"Unknown voice: {voice_id}") from None


def voice_at(index: int, voices: Sequence[VoiceIdentity] = VOICES) -> VoiceIdentity:
    """Voice at a catalog position; wraps in both directions."""
    return voices[index % len(voices)]


def index_of(voice_id: str, voices: Sequence[VoiceIdentity] = VOICES) -> int:
    """Catalog position of a voice id. Raises KeyError for unknown ids."""
    for index, voice in enumerate(voices):
        if voice.id == voice_id:
            return index
    raise KeyError(f"Unknown voice: {voice_id}")
