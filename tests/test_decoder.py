"""Unit tests for raw log decoding."""

import pytest

from layered_options_indexer import (
    EVENT_SPECS,
    EVENT_SPECS_BY_NAME,
    BalanceTransferred,
    ChildOptionOpened,
    DecodeError,
    OptionExercised,
    OptionOpened,
    decode_log,
    decode_logs,
)
from tests.fakes import (
    ALICE,
    BOB,
    CAROL,
    FAR_FUTURE,
    ONE,
    WBTC,
    ZERO,
    child_option_created_log,
    option_created_log,
    option_exercised_log,
    transfer_single_log,
)


class TestEventSpecs:

    def test_transfer_single_topic_matches_erc1155(self):
        spec = EVENT_SPECS_BY_NAME["TransferSingle"]
        assert spec.topic0 == (
            "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"
        )

    def test_topics_are_distinct_words(self):
        topics = [s.topic0 for s in EVENT_SPECS]
        assert len(set(topics)) == 4
        assert all(t.startswith("0x") and len(t) == 66 for t in topics)

    def test_creation_specs_come_first(self):
        names = [s.name for s in EVENT_SPECS]
        assert names.index("OptionCreated") < names.index("OptionExercised")
        assert names.index("ChildOptionCreated") < names.index("TransferSingle")


class TestDecodeLog:

    def test_option_created(self):
        raw = option_created_log(1, strike=50_000 * ONE, premium=1_000 * ONE, block=120, log_index=3)
        event = decode_log(EVENT_SPECS_BY_NAME["OptionCreated"], raw)

        assert isinstance(event, OptionOpened)
        assert event.token_id == 1
        assert event.creator == ALICE
        assert event.base_asset == WBTC
        assert event.strike_price == 50_000 * ONE
        assert event.expiration_time == FAR_FUTURE
        assert event.premium == 1_000 * ONE
        assert event.parent_id == 0
        assert event.meta.block_number == 120
        assert event.meta.log_index == 3
        assert event.meta.block_hash == raw["blockHash"]
        assert event.meta.timestamp is None

    def test_child_option_created(self):
        raw = child_option_created_log(2, parent_id=1, strike=52_000 * ONE, premium=500 * ONE)
        event = decode_log(EVENT_SPECS_BY_NAME["ChildOptionCreated"], raw)

        assert isinstance(event, ChildOptionOpened)
        assert event.token_id == 2
        assert event.parent_id == 1
        assert event.creator == ALICE
        assert event.base_asset is None
        assert event.strike_price == 52_000 * ONE
        assert event.premium == 500 * ONE

    def test_option_exercised(self):
        raw = option_exercised_log(2, exerciser=CAROL, payout=100)
        event = decode_log(EVENT_SPECS_BY_NAME["OptionExercised"], raw)

        assert isinstance(event, OptionExercised)
        assert event.token_id == 2
        assert event.exerciser == CAROL
        assert event.payout == 100

    def test_transfer_single(self):
        raw = transfer_single_log(ALICE, BOB, token_id=1, value=3, operator=CAROL)
        event = decode_log(EVENT_SPECS_BY_NAME["TransferSingle"], raw)

        assert isinstance(event, BalanceTransferred)
        assert event.operator == CAROL
        assert event.from_addr == ALICE
        assert event.to_addr == BOB
        assert event.token_id == 1
        assert event.value == 3

    def test_mint_decodes_zero_address(self):
        raw = transfer_single_log(ZERO, ALICE, token_id=1, value=1)
        event = decode_log(EVENT_SPECS_BY_NAME["TransferSingle"], raw)
        assert event.from_addr == ZERO

    def test_addresses_are_checksummed(self):
        mixed = "0xabcdef0123456789abcdef0123456789abcdef01"
        raw = transfer_single_log(mixed, BOB, token_id=1, value=1)
        event = decode_log(EVENT_SPECS_BY_NAME["TransferSingle"], raw)
        assert event.from_addr.lower() == mixed
        assert event.from_addr != mixed

    def test_wrong_signature_rejected(self):
        raw = option_exercised_log(2, exerciser=CAROL, payout=100)
        with pytest.raises(DecodeError, match="topic0"):
            decode_log(EVENT_SPECS_BY_NAME["OptionCreated"], raw)

    def test_missing_topic_rejected(self):
        raw = option_created_log(1, strike=1, premium=1)
        raw["topics"] = raw["topics"][:3]
        with pytest.raises(DecodeError, match="indexed topics"):
            decode_log(EVENT_SPECS_BY_NAME["OptionCreated"], raw)

    def test_short_data_rejected(self):
        raw = option_created_log(1, strike=1, premium=1)
        raw["data"] = raw["data"][: 2 + 64 * 2]
        with pytest.raises(DecodeError, match="data words"):
            decode_log(EVENT_SPECS_BY_NAME["OptionCreated"], raw)

    def test_ragged_data_rejected(self):
        raw = option_exercised_log(2, exerciser=CAROL, payout=100)
        raw["data"] = raw["data"] + "ff"
        with pytest.raises(DecodeError):
            decode_log(EVENT_SPECS_BY_NAME["OptionExercised"], raw)

    def test_missing_provenance_rejected(self):
        raw = option_exercised_log(2, exerciser=CAROL, payout=100)
        raw["blockHash"] = None
        with pytest.raises(DecodeError, match="provenance"):
            decode_log(EVENT_SPECS_BY_NAME["OptionExercised"], raw)


class TestDecodeLogs:

    def test_bad_log_does_not_abort_batch(self):
        spec = EVENT_SPECS_BY_NAME["OptionCreated"]
        good_a = option_created_log(1, strike=1, premium=1, log_index=0)
        bad = option_created_log(2, strike=1, premium=1, log_index=1)
        bad["data"] = "0x1234"
        good_b = option_created_log(3, strike=1, premium=1, log_index=2)

        events, failures = decode_logs(spec, [good_a, bad, good_b])

        assert [e.token_id for e in events] == [1, 3]
        assert len(failures) == 1
        assert failures[0][0] is bad
        assert isinstance(failures[0][1], DecodeError)

    def test_non_dict_entry_reported(self):
        spec = EVENT_SPECS_BY_NAME["OptionExercised"]
        events, failures = decode_logs(spec, [None])  # type: ignore[list-item]
        assert events == []
        assert len(failures) == 1
