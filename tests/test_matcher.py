"""Tests for participant matching."""

from config.schemas import Participant
from services.matcher import is_user_participant

JANE = Participant(name="Jane Doe", email="Jane.Doe@Example.com")
RAJ = Participant(name="Raj Patel", email="raj@acme.io")


def test_match_is_case_insensitive_and_trimmed():
    assert is_user_participant([JANE, RAJ], "  jane.doe@example.COM ")


def test_no_partial_matches():
    assert not is_user_participant([JANE], "doe@example.com")
    assert not is_user_participant([JANE], "jane.doe@example.co")


def test_empty_inputs():
    assert not is_user_participant([], "raj@acme.io")
    assert not is_user_participant([JANE], "")
