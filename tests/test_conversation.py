from __future__ import annotations

import itertools

from conversation import DELETE, EDIT, ConversationState, Conversations
from models import Message, MessageStatus

A = "0xaaaa"
B = "0xbbbb"


def _msg(index: int, sender: str = A, recipient: str = B) -> Message:
    return Message(
        id=f"m{index}",
        index=index,
        conversationId="conv",
        sender=sender,
        recipient=recipient,
        ciphertext="...",
        content=f"text {index}",
    )


def _state(*messages: Message) -> ConversationState:
    st = ConversationState("conv")
    for m in messages:
        st.add_message(m)
    return st


def test_messages_are_kept_in_insertion_order() -> None:
    st = _state(_msg(2), _msg(0), _msg(1))
    assert [m.index for m in st.messages] == [0, 1, 2]


def test_replayed_message_keeps_existing_state() -> None:
    st = _state(_msg(0))
    st.apply_status("m0", MessageStatus.READ, B)
    st.add_message(_msg(0))
    assert len(st) == 1
    assert st.get("m0").status == MessageStatus.READ


def test_status_never_regresses_for_any_event_order() -> None:
    events = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.DELIVERED]
    for order in itertools.permutations(events):
        st = _state(_msg(0))
        seen = MessageStatus.SENT
        for status in order:
            st.apply_status("m0", status, B)
            current = st.get("m0").status
            assert current >= seen
            seen = current
        assert st.get("m0").status == MessageStatus.READ


def test_status_transitions_and_duplicates() -> None:
    st = _state(_msg(0))
    assert st.apply_status("m0", MessageStatus.DELIVERED, B) is True
    assert st.apply_status("m0", MessageStatus.DELIVERED, B) is False
    assert st.apply_status("m0", MessageStatus.READ, B) is True
    assert st.apply_status("m0", MessageStatus.DELIVERED, B) is False
    assert st.get("m0").status == MessageStatus.READ


def test_only_the_recipient_can_acknowledge() -> None:
    st = _state(_msg(0))
    assert st.apply_status("m0", MessageStatus.READ, A) is False
    assert st.apply_status("m0", MessageStatus.DELIVERED, "0xcccc") is False
    assert st.get("m0").status == MessageStatus.SENT
    assert st.apply_status("unknown", MessageStatus.READ, B) is False


def test_reaction_is_idempotent_per_user_and_emoji() -> None:
    st = _state(_msg(0))
    assert st.add_reaction(0, "👍", A) is True
    assert st.add_reaction(0, "👍", A.upper()) is False
    assert st.add_reaction(0, "👍", B) is True
    assert st.add_reaction(0, "❤️", A) is True
    msg = st.at_index(0)
    assert [(r.emoji, r.user) for r in msg.reactions].count(("👍", A)) == 1
    assert st.reaction_counts(0) == {"👍": 2, "❤️": 1}
    assert st.add_reaction(7, "👍", A) is False


def test_remove_reaction() -> None:
    st = _state(_msg(0))
    st.add_reaction(0, "👍", A)
    assert st.remove_reaction(0, "👍", A) is True
    assert st.remove_reaction(0, "👍", A) is False
    assert st.reaction_counts(0) == {}


def test_conversations_add_reaction_by_conversation_id() -> None:
    convs = Conversations()
    convs.state("conv").add_message(_msg(0))
    assert convs.add_reaction("conv", 0, "😂", B) is True
    assert convs.add_reaction("conv", 0, "😂", B) is False
    assert convs.apply_status("conv", "m0", MessageStatus.DELIVERED, B) is True
    assert convs.messages("conv")[0].status == MessageStatus.DELIVERED


def test_edit_and_delete_supersede_the_original() -> None:
    st = _state(_msg(0), _msg(1))
    assert st.apply_supersede("m0", EDIT, B, "hijack") is False
    assert st.apply_supersede("m0", EDIT, A, "fixed typo") is True
    m0 = st.get("m0")
    assert (m0.content, m0.edited, m0.ciphertext) == ("fixed typo", True, "...")

    assert st.apply_supersede("m1", DELETE, A) is True
    assert st.get("m1").deleted and st.get("m1").content is None
    # delete is final
    assert st.apply_supersede("m1", EDIT, A, "back again") is False
    assert st.get("m1").content is None


def test_undecryptable_edit_marks_message() -> None:
    st = _state(_msg(0))
    st.apply_supersede("m0", EDIT, A, None)
    assert st.get("m0").undecryptable is True
