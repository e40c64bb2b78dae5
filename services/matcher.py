"""Participant matching — is this user on this call? Emails compare case-insensitively."""

from config.schemas import Participant


def normalize_email(email: str) -> str:
    return (email or "").lower().strip()


def is_user_participant(participants: list[Participant], user_email: str) -> bool:
    target = normalize_email(user_email)
    if not target:
        return False
    return any(normalize_email(p.email) == target for p in participants)
