"""Pydantic models for bulb discovery."""

from ipaddress import IPv4Address

from pydantic import BaseModel, ConfigDict, field_validator

from protocol.models import MAC_PATTERN


class PeerHandle(BaseModel):
    """Identity of one bulb: its MAC and IPv4 address.

    Construction validates both and raises a ValidationError (a ValueError)
    on malformed input. Handles are immutable and compare by value.
    """

    model_config = ConfigDict(frozen=True)

    mac: str  # 12 lowercase hex digits, no separators
    ip: IPv4Address

    def __init__(self, mac: str, ip: IPv4Address | str, **data) -> None:
        super().__init__(mac=mac, ip=ip, **data)

    @field_validator("mac")
    @classmethod
    def _check_mac(cls, value: str) -> str:
        folded = value.lower()
        if not MAC_PATTERN.fullmatch(folded):
            raise ValueError("MAC must be exactly 12 hex digits")
        return folded


class KnownBulb(BaseModel):
    """A bulb seen by the discovery listener, exposed over the API."""
    mac: str
    ip: str
    first_seen: float  # Unix timestamp
    last_seen: float  # Unix timestamp
    replies: int = 1
