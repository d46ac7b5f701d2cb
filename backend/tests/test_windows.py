from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from chat_digest.services.windows import JobPayload, Window, bucket_start, job_key

HOUR = timedelta(hours=1)


def test_bucket_start_floors_to_hour():
    assert bucket_start(datetime(2024, 1, 15, 10, 59, 59), HOUR) == datetime(2024, 1, 15, 10, 0)


def test_timestamp_on_boundary_belongs_to_next_window():
    window = Window.containing("chat", datetime(2024, 1, 15, 11, 0, 0), HOUR)
    assert window.start == datetime(2024, 1, 15, 11, 0)
    assert window.end == datetime(2024, 1, 15, 12, 0)


def test_window_is_half_open():
    earlier = Window.containing("chat", datetime(2024, 1, 15, 10, 59, 59, 999000), HOUR)
    later = Window.containing("chat", datetime(2024, 1, 15, 11, 0), HOUR)
    assert earlier.end == later.start
    assert earlier.key != later.key


def test_windows_align_to_epoch_for_other_sizes():
    size = timedelta(minutes=15)
    assert bucket_start(datetime(2024, 1, 15, 10, 44), size) == datetime(2024, 1, 15, 10, 30)


def test_key_depends_on_conversation_and_start():
    start = datetime(2024, 1, 15, 10, 0)
    assert job_key("chat-a", start) == "chat-a:2024-01-15T10:00:00"
    assert Window("chat-a", start, start + HOUR).key == job_key("chat-a", start)
    assert job_key("chat-a", start) != job_key("chat-b", start)


def test_payload_round_trips_through_json():
    window = Window.containing("chat", datetime(2024, 1, 15, 10, 30), HOUR)
    payload = JobPayload.model_validate_json(window.to_payload().model_dump_json())
    assert payload.kind == "summarize_window"
    assert payload.period_start == window.start
    assert payload.period_end == window.end
    assert payload.key == window.key


def test_payload_rejects_empty_period():
    start = datetime(2024, 1, 15, 10, 0)
    with pytest.raises(ValidationError):
        JobPayload(conversation_id="chat", period_start=start, period_end=start)


def test_payload_rejects_unknown_kind():
    with pytest.raises(ValidationError):
        JobPayload.model_validate(
            {
                "kind": "something_else",
                "conversation_id": "chat",
                "period_start": "2024-01-15T10:00:00",
                "period_end": "2024-01-15T11:00:00",
            }
        )
