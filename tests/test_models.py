import pytest
from pydantic import ValidationError

from ordered_multicast.models import Ack, Message, MessageId


def mid(timestamp, origin):
    return MessageId(timestamp=timestamp, origin_process_id=origin)


class TestMessageIdOrdering:
    def test_timestamp_is_primary_key(self):
        assert mid(1, 3) < mid(2, 1)
        assert mid(2, 1) > mid(1, 3)

    def test_origin_breaks_ties(self):
        assert mid(4, 2) < mid(4, 3)
        assert mid(4, 3) >= mid(4, 2)
        assert mid(4, 2) <= mid(4, 2)

    def test_sorting_and_min(self):
        ids = [mid(3, 1), mid(1, 3), mid(1, 2), mid(2, 2)]
        assert sorted(ids) == [mid(1, 2), mid(1, 3), mid(2, 2), mid(3, 1)]
        assert min(ids) == mid(1, 2)

    def test_equal_ids_hash_the_same(self):
        assert mid(5, 1) == mid(5, 1)
        assert len({mid(5, 1), mid(5, 1), mid(5, 2)}) == 2

    def test_comparison_with_other_types_is_unsupported(self):
        with pytest.raises(TypeError):
            mid(1, 1) < (1, 1)


class TestWireFormat:
    def test_message_uses_camel_case(self):
        message = Message(id=mid(1, 1), payload="X")
        assert message.to_wire() == {"id": {"timestamp": 1, "originProcessId": 1}, "payload": "X"}

    def test_ack_parses_from_wire(self):
        ack = Ack.model_validate({"messageId": {"timestamp": 7, "originProcessId": 2}, "fromProcessId": 3})
        assert ack.message_id == mid(7, 2)
        assert ack.from_process_id == 3

    def test_models_are_immutable(self):
        message = Message(id=mid(1, 1), payload="X")
        with pytest.raises(ValidationError):
            message.payload = "Y"

    @pytest.mark.parametrize("data", [
        {"timestamp": -1, "originProcessId": 1},
        {"timestamp": 1, "originProcessId": 0},
        {"timestamp": "abc", "originProcessId": 1},
    ])
    def test_rejects_malformed_ids(self, data):
        with pytest.raises(ValidationError):
            MessageId.model_validate(data)
