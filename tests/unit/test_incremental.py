"""
Tests for continuation tokens and tracking-field bookkeeping
"""

import pytest

from connectors.incremental import ContinuationToken, OffsetToken, TrackingState, token_matches, trailing_ties
from core.exceptions import IncrementalSyncError


class TestContinuationToken:
    """target|trackingField|value encoding"""

    def test_encode(self):
        assert ContinuationToken("public.orders", "updated_at", "42").encode() == "public.orders|updated_at|42"

    def test_value_may_contain_separator(self):
        decoded = ContinuationToken.decode("orders|note|a|b|c")
        assert decoded == ContinuationToken("orders", "note", "a|b|c")

    def test_empty_token_decodes_to_none(self):
        assert ContinuationToken.decode(None) is None
        assert ContinuationToken.decode("") is None

    def test_malformed_token_raises(self):
        with pytest.raises(IncrementalSyncError):
            ContinuationToken.decode("orders")

    def test_token_matches_is_case_insensitive(self):
        assert token_matches("Public.Orders|id|5", "public.orders")
        assert not token_matches("customers|id|5", "orders")
        assert not token_matches(None, "orders")


class TestOffsetToken:
    """target|offset encoding used by paginated full extraction"""

    def test_round_trip_keeps_dotted_target(self):
        assert OffsetToken.decode(OffsetToken("dbo.orders", 200).encode()) == OffsetToken("dbo.orders", 200)

    @pytest.mark.parametrize("token", ["orders|abc", "orders|-1", "|5", "orders"])
    def test_malformed(self, token):
        with pytest.raises(IncrementalSyncError):
            OffsetToken.decode(token)


class TestTrackingState:
    """Running maximum of the tracking field"""

    def test_observes_numeric_maximum(self):
        state = TrackingState("orders", "id")
        state.observe_all([{"id": 9}, {"id": 10}, {"id": 2}, {"id": None}])
        assert state.observed == 3
        assert state.token() == "orders|id|10"

    def test_resumes_from_matching_token(self):
        state = TrackingState.from_token("orders|id|10", "orders", "id")
        assert state.has_position
        assert state.is_new(11)
        assert not state.is_new(10)
        assert not state.is_new("9")

    def test_empty_batch_keeps_position(self):
        state = TrackingState.from_token("orders|id|10", "orders", "id")
        assert state.token() == "orders|id|10"

    def test_token_for_other_target_is_ignored(self):
        state = TrackingState.from_token("customers|id|10", "orders", "id", fallback="3")
        assert state.last_value == "3"
        assert state.token() == "orders|id|3"

    def test_token_for_other_field_raises(self):
        with pytest.raises(IncrementalSyncError):
            TrackingState.from_token("orders|updated_at|x", "orders", "id")

    def test_no_position_and_no_rows_yields_no_token(self):
        state = TrackingState("orders", "id")
        assert state.is_new(1)
        assert state.token() is None


class TestTrailingTies:
    """Rows sharing the last tracking value of a page"""

    def test_counts_the_tied_tail(self):
        rows = [{"v": 1}, {"v": 2}, {"v": "2"}, {"v": 2.0}]
        assert trailing_ties(rows, "v") == 3

    def test_distinct_last_value(self):
        assert trailing_ties([{"v": 1}, {"v": 2}], "v") == 1

    def test_no_tracking_value(self):
        assert trailing_ties([{"v": 1}, {"v": None}], "v") == 0
        assert trailing_ties([], "v") == 0
