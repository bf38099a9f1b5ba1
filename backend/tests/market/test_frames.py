"""Tests for push frame decoding."""

import pytest

from tickermirror.market.errors import MalformedMessage
from tickermirror.market.frames import (
    AccountNotification,
    BookUpdate,
    Channel,
    Heartbeat,
    SubscriptionAck,
    TickerRecord,
    TickerUpdate,
    UnknownChannel,
    VolumeUpdate,
    coerce_channel_id,
    decode_frame,
)

TICKER_RECORD = [1, "0.07", "0.069", "0.071", "0", "0", "0", 0, "0.072", "0.04"]


class TestDecodeFrame:
    """Unit tests for decode_frame."""

    def test_heartbeat(self):
        """Test decoding a heartbeat frame."""
        assert decode_frame([1010]) == Heartbeat()

    def test_subscribe_ack(self):
        """Test decoding a subscribe acknowledgement."""
        assert decode_frame([1002, 1]) == SubscriptionAck(channel=1002, subscribed=True)

    def test_unsubscribe_ack_with_text_channel(self):
        """Unsubscribe acks carry the channel id as a string."""
        frame = decode_frame(["1002", 0])
        assert frame == SubscriptionAck(channel=1002, subscribed=False)
        assert frame.channel == Channel.TICKER

    def test_ticker_update(self):
        """Test decoding a ticker update into records."""
        frame = decode_frame([1002, 5, TICKER_RECORD])
        assert isinstance(frame, TickerUpdate)
        assert frame.seq == 5
        assert frame.records == (TickerRecord(market_id=1, last="0.07", is_active=True),)

    def test_ticker_update_with_null_seq(self):
        """Test that a null sequence number is accepted."""
        frame = decode_frame([1002, None, TICKER_RECORD, TICKER_RECORD])
        assert isinstance(frame, TickerUpdate)
        assert len(frame.records) == 2

    def test_frozen_ticker_record(self):
        """Test that a frozen flag of 1 marks the record inactive."""
        record = list(TICKER_RECORD)
        record[7] = 1
        frame = decode_frame([1002, None, record])
        assert frame.records[0].is_active is False

    def test_frozen_flag_as_text(self):
        """Test that the frozen flag may arrive as text."""
        record = list(TICKER_RECORD)
        record[7] = "1"
        frame = decode_frame([1002, None, record])
        assert frame.records[0].is_active is False

    def test_short_ticker_record_is_malformed(self):
        """Test that a truncated ticker record is rejected."""
        with pytest.raises(MalformedMessage):
            decode_frame([1002, None, [1, "0.07"]])

    def test_ticker_record_with_bad_id_is_malformed(self):
        """Test that a non-numeric market id is rejected."""
        record = list(TICKER_RECORD)
        record[0] = "abc"
        with pytest.raises(MalformedMessage):
            decode_frame([1002, None, record])

    def test_volume_update(self):
        """Test decoding a 24h volume frame."""
        frame = decode_frame([1003, None, ["2024-01-01 00:00", 1234, {"BTC": "100"}]])
        assert isinstance(frame, VolumeUpdate)

    def test_account_notification(self):
        """Test decoding an account notification frame."""
        frame = decode_frame([1000, "", [["b", 28, "e", "1.0"]]])
        assert isinstance(frame, AccountNotification)

    def test_book_channel(self):
        """Test that a numeric market channel decodes as a book update."""
        frame = decode_frame([148, 12345, [["i", {"currencyPair": "BTC_ETH"}]]])
        assert frame == BookUpdate(channel=148, seq=12345, payload=([["i", {"currencyPair": "BTC_ETH"}]],))

    def test_unknown_channel(self):
        """Test that an unknown channel is kept rather than rejected."""
        frame = decode_frame([1001, 7, "hello"])
        assert frame == UnknownChannel(channel=1001, seq=7, payload=("hello",))

    @pytest.mark.parametrize("data", [{}, [], "1002", None, ["abc", 1], [True, 1]])
    def test_malformed(self, data):
        """Test that non-frame payloads raise MalformedMessage."""
        with pytest.raises(MalformedMessage):
            decode_frame(data)


class TestCoerceChannelId:
    def test_int(self):
        assert coerce_channel_id(1002) == 1002

    def test_text(self):
        assert coerce_channel_id("1002") == 1002

    def test_rejects_bool(self):
        with pytest.raises(MalformedMessage):
            coerce_channel_id(True)
