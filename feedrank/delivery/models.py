from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel


class DeliveryHandle(BaseModel):
    chat_id: str
    message_id: str


class ChannelInfo(BaseModel):
    id: str
    title: str = ""
    username: str = ""


@dataclass(frozen=True)
class DeliveryOptions:
    """How a post is announced. One record instead of positional flags."""

    kind: Literal["viral", "high_dynamics"] = "viral"
    growth_rate: float | None = None  # views/min, high_dynamics only
    window_minutes: float | None = None  # span covered by the sampled history
    mark_forwarded: bool = True


@dataclass
class DeliveryOutcome:
    channel_id: int
    strategy: str | None = None
    message_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FanoutResult:
    delivered: list[DeliveryOutcome] = field(default_factory=list)
    failed: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)
