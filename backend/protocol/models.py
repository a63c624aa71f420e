"""Pydantic models for the bulb wire protocol.

Every message on the wire is one JSON envelope: a method tag plus optional
``params`` (requests), ``result`` (replies) or ``error`` (rejections).
Field names are camelCase on the wire and matched case-insensitively on
input. Unknown fields are ignored so newer firmware does not break parsing.
"""

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MAC_PATTERN = re.compile(r"[0-9a-f]{12}")


class Method(str, Enum):
    """Method names understood by the bulbs."""
    REGISTRATION = "registration"
    GET_PILOT = "getPilot"
    SET_PILOT = "setPilot"
    SYNC_PILOT = "syncPilot"
    GET_SYSTEM_CONFIG = "getSystemConfig"
    GET_USER_CONFIG = "getUserConfig"
    SET_SYSTEM_CONFIG = "setSystemConfig"
    SET_USER_CONFIG = "setUserConfig"
    PULSE = "pulse"
    FIRST_BEAT = "firstBeat"

    @classmethod
    def _missing_(cls, value: object) -> "Method | None":
        if isinstance(value, str):
            folded = value.lower()
            for member in cls:
                if member.value.lower() == folded:
                    return member
        return None


class WireModel(BaseModel):
    """Base for envelope parts: camelCase aliases, unknown keys dropped."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _fold_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            alias = field.alias or name
            known[alias.lower()] = alias
        return {
            known.get(key.lower(), key) if isinstance(key, str) else key: value
            for key, value in data.items()
        }


class Params(WireModel):
    """Method parameters. Every field is optional and omitted when unset."""

    # Pilot
    state: bool | None = None
    scene_id: int | None = Field(None, ge=0)
    speed: int | None = Field(None, ge=0)
    play: bool | None = None
    r: int | None = Field(None, ge=0, le=255)
    g: int | None = Field(None, ge=0, le=255)
    b: int | None = Field(None, ge=0, le=255)
    c: int | None = Field(None, ge=0, le=255)  # cool white
    w: int | None = Field(None, ge=0, le=255)  # warm white
    temp: int | None = Field(None, gt=0)  # Kelvin
    dimming: int | None = Field(None, ge=0, le=100)

    # Registration
    home_id: int | None = None
    phone_ip: str | None = None
    phone_mac: str | None = Field(None, pattern=r"^[0-9a-f]{12}$")
    register_host: bool | None = Field(None, alias="register")

    # Configuration
    module_name: str | None = None
    mac: str | None = None
    type_id: int | None = None
    group_id: int | None = None
    room_id: int | None = None
    home_lock: bool | None = None
    pairing_lock: bool | None = None
    fw_version: str | None = None
    fade_in: int | None = None  # ms
    fade_out: int | None = None  # ms
    fade_night: bool | None = None
    dft_dim: int | None = None
    pwm_range: list[int] | None = None
    drv_conf: list[int] | None = None
    white_range: list[int] | None = None
    ext_range: list[int] | None = None
    po: bool | None = None


class Result(Params):
    """Reply payload: the params shape plus call outcome and signal strength."""
    success: bool | None = None
    rssi: int | None = None


class ErrorBody(WireModel):
    """Rejection sent by a bulb in place of a result."""
    code: int | None = None
    message: str | None = None


class Envelope(WireModel):
    """One protocol message."""

    method: Method | None = None
    id: int | None = None
    params: Params | None = None
    result: Result | None = None
    error: ErrorBody | None = None

    @field_validator("method", mode="before")
    @classmethod
    def _fold_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Method(value)
        return value

    @model_validator(mode="after")
    def _check_shape(self) -> "Envelope":
        if self.result is not None and self.error is not None:
            raise ValueError("envelope carries both a result and an error")
        # Bulbs drop the method from some rejections, so only those may omit it
        if self.method is None and self.error is None:
            raise ValueError("envelope has no method")
        return self


# Fields that mean something for each method. Anything else is accepted on
# the wire but reported by protocol.codec.unexpected_params().
PILOT_FIELDS = frozenset({
    "state", "scene_id", "speed", "play",
    "r", "g", "b", "c", "w", "temp", "dimming",
})
REGISTRATION_FIELDS = frozenset({"home_id", "phone_ip", "phone_mac", "register_host"})
CONFIG_FIELDS = frozenset({
    "module_name", "mac", "type_id", "home_id", "group_id", "room_id",
    "home_lock", "pairing_lock", "fw_version", "fade_in", "fade_out",
    "fade_night", "dft_dim", "pwm_range", "drv_conf", "white_range",
    "ext_range", "po",
})

METHOD_PARAMS: dict[Method, frozenset[str]] = {
    Method.REGISTRATION: REGISTRATION_FIELDS,
    Method.GET_PILOT: frozenset(),
    Method.SET_PILOT: PILOT_FIELDS,
    Method.SYNC_PILOT: PILOT_FIELDS | {"mac"},
    Method.GET_SYSTEM_CONFIG: frozenset(),
    Method.GET_USER_CONFIG: frozenset(),
    Method.SET_SYSTEM_CONFIG: CONFIG_FIELDS,
    Method.SET_USER_CONFIG: CONFIG_FIELDS,
    Method.PULSE: frozenset(),
    Method.FIRST_BEAT: frozenset({"mac", "home_id", "fw_version"}),
}
