"""Decoding of inbound push-channel frames.

Frames are JSON arrays ``[channel, seq, *payload]``. Each one is decoded into a
small frozen dataclass so routing code never indexes positional arrays.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Union

from .errors import MalformedMessage


class Channel(IntEnum):
    """Reserved push channel ids."""

    ACCOUNT_NOTIFICATIONS = 1000
    TICKER = 1002
    VOLUME_24H = 1003
    HEARTBEAT = 1010


# Channel ids below this one are per-market order book subscriptions
BOOK_CHANNEL_LIMIT = 1000

# Ticker record layout:
# [id, last, lowestAsk, highestBid, percentChange, baseVolume, quoteVolume,
#  isFrozen, high24hr, low24hr]
_TICKER_ID = 0
_TICKER_LAST = 1
_TICKER_FROZEN = 7


@dataclass(frozen=True, slots=True)
class TickerRecord:
    """Partial market state carried by one ticker push record."""

    market_id: int
    last: str
    is_active: bool

    def tracked(self) -> dict[str, Any]:
        return {"last": self.last, "is_active": self.is_active}


@dataclass(frozen=True, slots=True)
class Heartbeat:
    pass


@dataclass(frozen=True, slots=True)
class SubscriptionAck:
    channel: int
    subscribed: bool


@dataclass(frozen=True, slots=True)
class TickerUpdate:
    seq: Any
    records: tuple[TickerRecord, ...]


@dataclass(frozen=True, slots=True)
class VolumeUpdate:
    seq: Any
    payload: tuple


@dataclass(frozen=True, slots=True)
class AccountNotification:
    seq: Any
    payload: tuple


@dataclass(frozen=True, slots=True)
class BookUpdate:
    channel: int
    seq: Any
    payload: tuple


@dataclass(frozen=True, slots=True)
class UnknownChannel:
    channel: int
    seq: Any
    payload: tuple


Frame = Union[
    Heartbeat,
    SubscriptionAck,
    TickerUpdate,
    VolumeUpdate,
    AccountNotification,
    BookUpdate,
    UnknownChannel,
]


def coerce_channel_id(value: Any) -> int:
    """Normalize a channel id to int. Unsubscribe acks send it as text."""
    if isinstance(value, bool):
        raise MalformedMessage(f"channel id is not numeric: {value!r}", value)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"channel id is not numeric: {value!r}", value) from e


def decode_ticker_record(record: Any) -> TickerRecord:
    if not isinstance(record, list) or len(record) <= _TICKER_FROZEN:
        raise MalformedMessage("ticker record has unexpected shape", record)
    try:
        market_id = int(record[_TICKER_ID])
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"ticker record has bad market id: {record[_TICKER_ID]!r}", record) from e
    last = record[_TICKER_LAST]
    if not isinstance(last, str):
        last = str(last)
    return TickerRecord(
        market_id=market_id,
        last=last,
        is_active=str(record[_TICKER_FROZEN]) != "1",
    )


def decode_frame(data: Any) -> Frame:
    """Decode one JSON-decoded push frame.

    Raises MalformedMessage if the frame is not an array, its channel id is not
    numeric, or a ticker record is malformed.
    """
    if not isinstance(data, list) or not data:
        raise MalformedMessage("push frame is not a non-empty array", data)

    channel = coerce_channel_id(data[0])
    seq = data[1] if len(data) > 1 else None
    payload = tuple(data[2:])

    if channel == Channel.HEARTBEAT:
        return Heartbeat()
    # [<channel>, 1] acknowledges a subscribe, [<channel>, 0] an unsubscribe
    if len(data) == 2 and seq in (0, 1) and not isinstance(seq, bool):
        return SubscriptionAck(channel=channel, subscribed=seq == 1)
    if channel == Channel.TICKER:
        return TickerUpdate(seq=seq, records=tuple(decode_ticker_record(r) for r in payload))
    if channel == Channel.VOLUME_24H:
        return VolumeUpdate(seq=seq, payload=payload)
    if channel == Channel.ACCOUNT_NOTIFICATIONS:
        return AccountNotification(seq=seq, payload=payload)
    if 0 < channel < BOOK_CHANNEL_LIMIT:
        return BookUpdate(channel=channel, seq=seq, payload=payload)
    return UnknownChannel(channel=channel, seq=seq, payload=payload)
