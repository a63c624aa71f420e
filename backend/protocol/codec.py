"""
Envelope encoding, decoding and request builders.

Encoding writes compact camelCase JSON and leaves out every unset field.
Decoding never raises: malformed input comes back as a DecodeFailure so a
garbled datagram can be told apart from a socket error.
"""

import logging
from dataclasses import dataclass
from ipaddress import IPv4Address

from pydantic import ValidationError

from protocol.models import MAC_PATTERN, METHOD_PARAMS, Envelope, Method, Params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodeFailure:
    """A payload that could not be turned into an envelope."""
    reason: str
    raw: bytes = b""


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to UTF-8 JSON."""
    return envelope.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode(data: bytes | str) -> Envelope | DecodeFailure:
    """Parse a payload into an envelope, or describe why it can't be."""
    if isinstance(data, str):
        try:
            raw = data.encode("utf-8")
        except UnicodeEncodeError as e:
            return DecodeFailure(str(e), data.encode("utf-8", "backslashreplace"))
    else:
        raw = bytes(data)
    if not raw.strip():
        return DecodeFailure("empty payload", raw)

    try:
        envelope = Envelope.model_validate_json(raw)
    except (ValidationError, UnicodeDecodeError) as e:
        return DecodeFailure(_describe(e), raw)

    extra = unexpected_params(envelope)
    if extra:
        logger.debug(f"{envelope.method.value} carries unexpected params: {sorted(extra)}")
    return envelope


def _describe(error: Exception) -> str:
    if isinstance(error, ValidationError):
        first = error.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        return f"{location}: {first['msg']}" if location else first["msg"]
    return str(error)


def unexpected_params(envelope: Envelope) -> frozenset[str]:
    """Return the params fields that have no meaning for the envelope's method."""
    if envelope.method is None or envelope.params is None:
        return frozenset()
    present = {name for name, value in envelope.params if value is not None}
    return frozenset(present - METHOD_PARAMS[envelope.method])


def format_mac(value: bytes | str) -> str:
    """Normalize a MAC to the 12 lowercase hex digits used on the wire.

    Accepts 6 raw bytes or a string with or without ':'/'-' separators.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 6:
            raise ValueError(f"MAC must be 6 bytes, got {len(value)}")
        return bytes(value).hex()

    digits = value.replace(":", "").replace("-", "").lower()
    if not MAC_PATTERN.fullmatch(digits):
        raise ValueError(f"Invalid MAC address: {value!r}")
    return digits


# --- Request builders ---

def make_registration(home_id: int, host_ip: str, host_mac: bytes | str) -> Envelope:
    """Build the envelope that registers this host for syncPilot pushes."""
    IPv4Address(host_ip)  # raises AddressValueError (a ValueError)
    return Envelope(
        method=Method.REGISTRATION,
        params=Params(
            home_id=home_id,
            phone_ip=host_ip,
            phone_mac=format_mac(host_mac),
            register_host=True,
        ),
    )


def make_get_pilot() -> Envelope:
    return Envelope(method=Method.GET_PILOT)


def make_get_user_config() -> Envelope:
    return Envelope(method=Method.GET_USER_CONFIG)


def make_get_system_config() -> Envelope:
    return Envelope(method=Method.GET_SYSTEM_CONFIG)
