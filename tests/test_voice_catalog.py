"""
Tests for the static voice catalog.
"""
import dataclasses

import pytest

from voice_catalog import DEFAULT_VOICE_ID, VOICES, get_voice, index_of, list_voices, voice_at


def test_catalog_has_eight_unique_voices():
    ids = [v.id for v in list_voices()]

    assert ids == ["alloy", "ash", "ballad", "coral", "echo", "sage", "shimmer", "verse"]
    assert len(set(ids)) == 8


def test_provider_names_match_ids():
    assert all(v.provider_voice_name == v.id for v in VOICES)


def test_default_voice_is_in_catalog():
    assert get_voice(DEFAULT_VOICE_ID).display_name == "Verse"


def test_unknown_voice():
    with pytest.raises(KeyError):
        get_voice("robot")


def test_voice_at_wraps():
    assert voice_at(8).id == "alloy"
    assert voice_at(-1).id == "verse"


def test_index_of():
    assert index_of("coral") == 3


def test_entries_are_immutable():
    with pytest.raises(dataclasses.FrozenInstanceError):
        VOICES[0].display_name = "Changed"


def test_list_voices_returns_a_copy():
    voices = list_voices()
    voices.clear()

    assert len(list_voices()) == 8


def test_to_dict():
    assert get_voice("sage").to_dict() == {
        "id": "sage",
        "display_name": "Sage",
        "description": "Calm and thoughtful",
        "provider_voice_name": "sage",
    }


def test_helpers_accept_a_custom_catalog():
    voices = (get_voice("sage"), get_voice("ash"))

    assert voice_at(3, voices).id == "ash"
    assert index_of("ash", voices) == 1
    with pytest.raises(KeyError):
        index_of("coral", voices)
