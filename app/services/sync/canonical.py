"""
Natural Key Generation for Idempotent Storage

Every stored message is identified by the tuple:

    (provider, provider_message_id, owner_account_email)

The same tuple must be produced by every run (and every reimplementation) for
upserts to stay idempotent, so the only transformation applied is the one the
normalizer already applies to emails (strip + lower-case).
"""
from typing import NamedTuple, Optional


class NaturalKey(NamedTuple):
    provider: str
    provider_message_id: str
    owner_account_email: str

    def as_string(self) -> str:
        """
        Flat form used in logs and error entries.

        Examples:
            >>> NaturalKey('gmail', '18c3f8a9', 'alice@co.com').as_string()
            'gmail:18c3f8a9:alice@co.com'
        """
        return f"{self.provider}:{self.provider_message_id}:{self.owner_account_email}"

    def as_filter(self) -> dict:
        """Column → value mapping for storage lookups."""
        return {
            "provider": self.provider,
            "provider_message_id": self.provider_message_id,
            "owner_account_email": self.owner_account_email,
        }


def normalize_email(value: Optional[str]) -> str:
    """Canonical form of an email address (strip + lower-case)."""
    return (value or "").strip().lower()


def get_natural_key(provider: str, provider_message_id: str, owner_account_email: str) -> NaturalKey:
    """
    Build the natural key for a message.

    Examples:
        >>> get_natural_key('office365', '<abc@mail>', ' Alice@Co.com ')
        NaturalKey(provider='office365', provider_message_id='<abc@mail>', owner_account_email='alice@co.com')
    """
    return NaturalKey(provider, provider_message_id, normalize_email(owner_account_email))
