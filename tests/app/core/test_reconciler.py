"""Tests for MessageReconciler."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import SendRejectedError
from app.core.reconciler import ConversationState, MessageReconciler
from app.schemas.message import (
    Message,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
)

CONVERSATION_ID = "c0ffee00-0000-4000-8000-000000000001"
BASE_TIME = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def make_message(
    message_id,
    role="user",
    content="Hi",
    at=0.0,
    streaming=False,
    severity="info",
    conversation_id=CONVERSATION_ID,
):
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        created_at=BASE_TIME + timedelta(seconds=at),
        is_streaming=streaming,
        severity=severity,
    )


@pytest.fixture
def reconciler():
    return MessageReconciler(CONVERSATION_ID)


@pytest.fixture
def streaming_reconciler(reconciler):
    """Reconciler mid-send with an empty assistant placeholder a-1 streaming."""
    reconciler.load([make_message("u-1", content="Tell me a story")])
    reconciler.begin_send()
    reconciler.begin_stream(make_message("a-1", role="assistant", content="", at=1, streaming=True))
    return reconciler


def test_optimistic_message_upgraded_by_echo(reconciler):
    reconciler.add_optimistic(make_message("temp-1", content="Hi"))
    reconciler.apply_event(MessageInserted(message=make_message("m-1", content="Hi", at=0.2)))

    messages = reconciler.messages
    assert len(messages) == 1
    assert messages[0].id == "m-1"
    assert messages[0].content == "Hi"


def test_confirm_then_echo_keeps_one_copy(reconciler):
    durable = make_message("m-1", content="Hi", at=0.2)
    reconciler.add_optimistic(make_message("temp-1", content="Hi"))

    reconciler.confirm("temp-1", durable)
    reconciler.apply_event(MessageInserted(message=durable))

    assert [m.id for m in reconciler.messages] == ["m-1"]


def test_echo_then_confirm_keeps_one_copy(reconciler):
    durable = make_message("m-1", content="Hi", at=0.2)
    reconciler.add_optimistic(make_message("temp-1", content="Hi"))

    reconciler.apply_event(MessageInserted(message=durable))
    reconciler.confirm("temp-1", durable)

    assert [m.id for m in reconciler.messages] == ["m-1"]


def test_confirm_keeps_repeated_user_text(reconciler):
    reconciler.load([make_message("m-1", content="ok")])
    reconciler.add_optimistic(make_message("temp-2", content="ok", at=2))

    # The temp entry pairs with the new durable row, not the older "ok".
    reconciler.confirm("temp-2", make_message("m-2", content="ok", at=2))

    assert [m.id for m in reconciler.messages] == ["m-1", "m-2"]


def test_stale_streaming_update_does_not_shrink_content(streaming_reconciler):
    streaming_reconciler.apply_local_content("a-1", "Hello world")

    streaming_reconciler.apply_event(
        MessageUpdated(message=make_message("a-1", role="assistant", content="Hello", at=1, streaming=True))
    )

    current = streaming_reconciler.get("a-1")
    assert current.content == "Hello world"
    assert current.is_streaming is True

    streaming_reconciler.apply_event(
        MessageUpdated(message=make_message("a-1", role="assistant", content="Hello world!", at=1))
    )

    current = streaming_reconciler.get("a-1")
    assert current.content == "Hello world!"
    assert current.is_streaming is False
    assert streaming_reconciler.active_stream_id is None


def test_final_update_replaces_content_even_if_shorter(streaming_reconciler):
    streaming_reconciler.apply_local_content("a-1", "Hello world")

    streaming_reconciler.apply_event(
        MessageUpdated(message=make_message("a-1", role="assistant", content="Hello", at=1))
    )

    current = streaming_reconciler.get("a-1")
    assert current.content == "Hello"
    assert current.is_streaming is False


def test_finished_message_ignores_stale_streaming_echo(streaming_reconciler):
    streaming_reconciler.complete_stream("a-1", "Done")

    changed = streaming_reconciler.apply_event(
        MessageUpdated(message=make_message("a-1", role="assistant", content="Do", at=1, streaming=True))
    )

    assert changed is False
    assert streaming_reconciler.get("a-1").content == "Done"
    assert streaming_reconciler.get("a-1").is_streaming is False


def test_finished_message_accepts_severity_change(reconciler):
    reconciler.load([make_message("a-1", role="assistant", content="Done")])

    reconciler.apply_event(
        MessageUpdated(message=make_message("a-1", role="assistant", content="Other", severity="error"))
    )

    current = reconciler.get("a-1")
    assert current.severity == "error"
    assert current.content == "Done"


def test_local_content_never_shrinks(streaming_reconciler):
    assert streaming_reconciler.apply_local_content("a-1", "Hello") is True
    assert streaming_reconciler.apply_local_content("a-1", "Hel") is False
    assert streaming_reconciler.get("a-1").content == "Hello"


def test_local_content_ignored_for_inactive_message(streaming_reconciler):
    assert streaming_reconciler.apply_local_content("u-1", "Tell me a story please") is False


def test_streaming_content_is_monotonic_under_random_interleaving(streaming_reconciler):
    rng = random.Random(7)
    text = "The quick brown fox jumps over the lazy dog"
    observed = []
    streaming_reconciler.add_listener(
        lambda messages: observed.extend(
            len(m.content) for m in messages if m.id == "a-1" and m.is_streaming
        )
    )

    local = 0
    for _ in range(200):
        if rng.random() < 0.5 and local < len(text):
            local += 1
            streaming_reconciler.apply_local_content("a-1", text[:local])
        else:
            echoed = rng.randint(0, len(text))
            streaming_reconciler.apply_event(
                MessageUpdated(
                    message=make_message("a-1", role="assistant", content=text[:echoed], at=1, streaming=True)
                )
            )

    assert observed == sorted(observed)


def test_messages_ordered_by_created_at(reconciler):
    reconciler.apply_event(MessageInserted(message=make_message("m-3", content="third", at=3)))
    reconciler.apply_event(MessageInserted(message=make_message("m-1", content="first", at=1)))
    reconciler.apply_event(MessageInserted(message=make_message("m-2", content="second", at=2)))

    assert [m.id for m in reconciler.messages] == ["m-1", "m-2", "m-3"]


def test_equal_timestamps_keep_arrival_order(reconciler):
    reconciler.apply_event(MessageInserted(message=make_message("m-b", content="b", at=1)))
    reconciler.apply_event(MessageInserted(message=make_message("m-a", content="a", at=1)))

    assert [m.id for m in reconciler.messages] == ["m-b", "m-a"]


def test_duplicate_echo_inside_window_is_dropped(reconciler):
    reconciler.apply_event(MessageInserted(message=make_message("m-1", content="Hi")))

    changed = reconciler.apply_event(MessageInserted(message=make_message("m-2", content="Hi", at=3)))

    assert changed is False
    assert [m.id for m in reconciler.messages] == ["m-1"]


def test_same_text_outside_window_is_kept(reconciler):
    reconciler.apply_event(MessageInserted(message=make_message("m-1", content="Hi")))

    reconciler.apply_event(MessageInserted(message=make_message("m-2", content="Hi", at=60)))

    assert [m.id for m in reconciler.messages] == ["m-1", "m-2"]


def test_load_keeps_repeated_rows(reconciler):
    reconciler.load(
        [
            make_message("m-1", content="ok"),
            make_message("m-2", content="ok", at=1),
        ]
    )

    assert [m.id for m in reconciler.messages] == ["m-1", "m-2"]


def test_load_keeps_longer_local_streaming_content(streaming_reconciler):
    streaming_reconciler.apply_local_content("a-1", "Once upon")

    streaming_reconciler.load(
        [
            make_message("u-1", content="Tell me a story"),
            make_message("a-1", role="assistant", content="Once", at=1, streaming=True),
        ]
    )

    assert streaming_reconciler.get("a-1").content == "Once upon"
    assert len(streaming_reconciler.messages) == 2


def test_only_active_message_streams(streaming_reconciler):
    streaming_reconciler.apply_event(
        MessageInserted(message=make_message("a-0", role="assistant", content="left over", at=0.5, streaming=True))
    )

    streaming = [m.id for m in streaming_reconciler.messages if m.is_streaming]
    assert streaming == ["a-1"]


def test_begin_stream_freezes_previous_streaming_message(reconciler):
    reconciler.begin_send()
    reconciler.begin_stream(make_message("a-1", role="assistant", content="", streaming=True))
    reconciler.complete_stream("a-1", "first")
    reconciler.begin_send()
    reconciler.begin_stream(make_message("a-2", role="assistant", content="", at=2, streaming=True))

    assert [m.id for m in reconciler.messages if m.is_streaming] == ["a-2"]
    assert reconciler.active_stream_id == "a-2"


def test_update_for_unknown_id_is_inserted(reconciler):
    reconciler.apply_event(MessageUpdated(message=make_message("m-9", content="missed")))

    assert reconciler.get("m-9") is not None


def test_deleted_event_removes_message(streaming_reconciler):
    streaming_reconciler.apply_event(
        MessageDeleted(message_id="a-1", conversation_id=CONVERSATION_ID)
    )

    assert streaming_reconciler.get("a-1") is None
    assert streaming_reconciler.active_stream_id is None


def test_event_for_other_conversation_is_ignored(reconciler):
    changed = reconciler.apply_event(
        MessageInserted(message=make_message("m-1", conversation_id="someone-else"))
    )

    assert changed is False
    assert reconciler.messages == []


def test_begin_send_rejected_unless_idle(streaming_reconciler):
    before = streaming_reconciler.messages

    with pytest.raises(SendRejectedError):
        streaming_reconciler.begin_send()

    assert streaming_reconciler.state is ConversationState.STREAMING
    assert streaming_reconciler.messages == before


def test_state_flags_follow_transitions(reconciler):
    assert reconciler.state is ConversationState.IDLE
    reconciler.begin_send()
    assert reconciler.is_sending and not reconciler.is_streaming
    reconciler.begin_stream(make_message("a-1", role="assistant", content="", streaming=True))
    assert reconciler.is_sending and reconciler.is_streaming
    reconciler.complete_stream("a-1", "done")
    assert reconciler.state is ConversationState.IDLE
    assert not reconciler.is_sending


def test_finish_send_returns_to_idle_from_sending(reconciler):
    reconciler.begin_send()
    reconciler.finish_send()

    assert reconciler.state is ConversationState.IDLE


def test_fail_freezes_stream_with_error(streaming_reconciler):
    streaming_reconciler.apply_local_content("a-1", "Partial resp")

    streaming_reconciler.fail(ConnectionError("dropped"), "Something went wrong")

    current = streaming_reconciler.get("a-1")
    assert current.content == "Something went wrong"
    assert current.severity == "error"
    assert current.is_streaming is False
    assert streaming_reconciler.get("u-1").severity == "info"
    assert streaming_reconciler.state is ConversationState.ERROR
    with pytest.raises(SendRejectedError):
        streaming_reconciler.begin_send()

    streaming_reconciler.acknowledge_error()

    assert streaming_reconciler.state is ConversationState.IDLE
    assert streaming_reconciler.last_error is None


def test_fail_marks_unsaved_user_message(reconciler):
    reconciler.begin_send()
    reconciler.add_optimistic(make_message("temp-1", content="Hi"))

    reconciler.fail(RuntimeError("insert failed"), "Something went wrong", failed_message_id="temp-1")

    assert reconciler.get("temp-1").severity == "error"
    assert reconciler.state is ConversationState.ERROR


def test_listener_receives_snapshots_until_removed(reconciler):
    snapshots = []
    remove = reconciler.add_listener(snapshots.append)

    reconciler.apply_event(MessageInserted(message=make_message("m-1")))
    remove()
    reconciler.apply_event(MessageInserted(message=make_message("m-2", content="Bye", at=1)))

    assert len(snapshots) == 1
    assert [m.id for m in snapshots[0]] == ["m-1"]


def test_report_error_is_not_fatal(streaming_reconciler):
    streaming_reconciler.report_error(RuntimeError("flush failed"))

    assert streaming_reconciler.state is ConversationState.STREAMING
    assert len(streaming_reconciler.diagnostics) == 1
