"""Inbound WebSocket message models.

Every frame is decoded once at the boundary into one of the models below,
selected by its ``type`` field. Handlers receive typed objects, never raw
dicts.
"""

import json
import re
from typing import Annotated, List, Literal, Optional, Union, get_args

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

import config
from errors import ValidationError


class MalformedMessage(Exception):
    """Frame is not a JSON object."""


class UnknownMessageType(Exception):
    """Frame has a ``type`` this server does not handle."""


def _clean_name(v) -> str:
    if not isinstance(v, str):
        raise ValueError("Player name must be a string")
    v = re.sub(r'<[^>]+>', '', v).strip()
    if not v or len(v) > config.MAX_NAME_LENGTH:
        raise ValueError(f"Player name must be 1-{config.MAX_NAME_LENGTH} characters")
    return v


def _clean_avatar(v) -> str:
    if not isinstance(v, str):
        return ""
    return v[:config.MAX_AVATAR_LENGTH]


def _clean_winner_duration(v):
    # 0 / null / "" mean "use the default"
    if not v:
        return None
    return v


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _RoomRequest(InboundMessage):
    room_id: str = Field(alias="roomId")
    player_name: str = Field(alias="playerName")
    avatar: str = ""

    @field_validator("room_id", mode="before")
    @classmethod
    def validate_room_id(cls, v) -> str:
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            raise ValueError("Room id must be a string")
        v = v.strip()
        if not v or len(v) > config.MAX_ROOM_ID_LENGTH:
            raise ValueError(f"Room id must be 1-{config.MAX_ROOM_ID_LENGTH} characters")
        return v

    @field_validator("player_name", mode="before")
    @classmethod
    def validate_player_name(cls, v) -> str:
        return _clean_name(v)

    @field_validator("avatar", mode="before")
    @classmethod
    def validate_avatar(cls, v) -> str:
        return _clean_avatar(v)


class CreateRoom(_RoomRequest):
    type: Literal["create_room"]
    winner_duration: Optional[float] = Field(
        default=None, alias="winnerDuration", gt=0, le=config.MAX_WINNER_DURATION)

    @field_validator("winner_duration", mode="before")
    @classmethod
    def validate_winner_duration(cls, v):
        return _clean_winner_duration(v)


class JoinRoom(_RoomRequest):
    type: Literal["join_room"]


class LeaveRoom(InboundMessage):
    type: Literal["leave_room"]


class PlayerInfo(InboundMessage):
    type: Literal["player_info"]
    player_name: str = Field(alias="playerName")
    avatar: Optional[str] = None

    @field_validator("player_name", mode="before")
    @classmethod
    def validate_player_name(cls, v) -> str:
        return _clean_name(v)

    @field_validator("avatar", mode="before")
    @classmethod
    def validate_avatar(cls, v):
        if v is None:
            return None
        return _clean_avatar(v)


class ControlLed(InboundMessage):
    type: Literal["control_led", "led_control"]
    action: str = Field(min_length=1, max_length=config.MAX_ACTION_LENGTH)
    target: str = Field(
        min_length=1, validation_alias=AliasChoices("target", "targetClientId", "targetId"))


class StartSpinner(InboundMessage):
    type: Literal["start_spinner"]
    winner_duration: Optional[float] = Field(
        default=None, alias="winnerDuration", gt=0, le=config.MAX_WINNER_DURATION)

    @field_validator("winner_duration", mode="before")
    @classmethod
    def validate_winner_duration(cls, v):
        return _clean_winner_duration(v)


class SetPlayerOrder(InboundMessage):
    type: Literal["set_player_order"]
    order: List[str] = Field(validation_alias=AliasChoices("order", "playerOrder"))

    @field_validator("order", mode="before")
    @classmethod
    def drop_non_string_ids(cls, v):
        # non-string ids can never match a member
        if isinstance(v, list):
            return [pid for pid in v if isinstance(pid, str)]
        return v


class ResetGame(InboundMessage):
    type: Literal["reset_game"]
    points_for_bomb: Optional[int] = Field(default=None, alias="pointsForBomb", ge=1)
    bomb_damage_percent: Optional[int] = Field(
        default=None, alias="bombDamagePercent", ge=0, le=100)
    max_points: Optional[int] = Field(default=None, alias="maxPoints", ge=1)
    win_condition_enabled: Optional[bool] = Field(default=None, alias="winConditionEnabled")

    def settings_overrides(self) -> dict:
        """Only the settings the client actually sent."""
        return self.model_dump(exclude={"type"}, exclude_none=True)


class RollDice(InboundMessage):
    type: Literal["roll_dice"]


class UseBomb(InboundMessage):
    type: Literal["use_bomb"]
    target_id: str = Field(alias="targetId", min_length=1)


class Ping(InboundMessage):
    type: Literal["ping"]


_MODELS = (
    CreateRoom, JoinRoom, LeaveRoom, PlayerInfo, ControlLed, StartSpinner,
    SetPlayerOrder, ResetGame, RollDice, UseBomb, Ping,
)

Message = Annotated[Union[_MODELS], Field(discriminator="type")]

MESSAGE_TYPES = frozenset(
    t for model in _MODELS for t in get_args(model.model_fields["type"].annotation)
)

_adapter = TypeAdapter(Message)


def _describe(exc: pydantic.ValidationError) -> str:
    err = exc.errors()[0]
    # first loc element is the union tag
    loc = [str(p) for p in err["loc"][1:]]
    msg = err["msg"].removeprefix("Value error, ")
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def parse_message(data: str):
    """Decode a raw frame into its message model.

    Raises MalformedMessage / UnknownMessageType for frames that should be
    dropped, and ValidationError for known types with bad fields.
    """
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, RecursionError) as e:
        raise MalformedMessage("Invalid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedMessage("Message must be a JSON object")

    msg_type = payload.get("type")
    if not isinstance(msg_type, str) or msg_type not in MESSAGE_TYPES:
        raise UnknownMessageType(str(msg_type))

    try:
        return _adapter.validate_python(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(_describe(e)) from e
