import pytest

from chat_engine.memory import MemoryWindow
from chat_engine.messages import ConversationLog, Message, Sender
from chat_engine.replay import HistoryReplayController, replay_into_memory
from chat_engine.runner import RunResult
from note_core.errors import ConcurrencyViolation, MessageNotFound, NoUserMessageToReplay


def build_log(*entries):
    log = ConversationLog()
    for text, sender in entries:
        log.add(Message(text=text, sender=sender))
    return log


FIVE = (
    ("u0", Sender.USER),
    ("a1", Sender.AI),
    ("u2", Sender.USER),
    ("a3", Sender.AI),
    ("u4", Sender.USER),
)


class RecordingTurn:
    def __init__(self):
        self.inputs = []

    async def __call__(self, message):
        self.inputs.append(message)
        return RunResult(text="regenerated")


@pytest.mark.asyncio
async def test_edit_truncates_and_regenerates_from_edited_message():
    log = build_log(*FIVE)
    memory = MemoryWindow(6)
    memory.append("u0", "a1")
    memory.append("u2", "a3")
    turn = RecordingTurn()
    target = log.messages[2].id

    result = await HistoryReplayController(log, memory, turn).edit_message(target, "X")

    assert [m.text for m in log.messages] == ["u0", "a1", "X"]
    assert memory.load() == (("u0", "a1"),)
    assert [m.text for m in turn.inputs] == ["X"]
    assert turn.inputs[0] is log.messages[2]
    assert result.text == "regenerated"


@pytest.mark.asyncio
async def test_replayed_memory_matches_organic_conversation():
    log = build_log(*FIVE)
    memory = MemoryWindow(6)
    turn = RecordingTurn()

    await HistoryReplayController(log, memory, turn).edit_message(log.messages[4].id, "u4-edited")
    memory.append(turn.inputs[0].text, "answer")

    organic = MemoryWindow(6)
    organic.append("u0", "a1")
    organic.append("u2", "a3")
    organic.append("u4-edited", "answer")
    assert memory.load() == organic.load()


@pytest.mark.asyncio
async def test_editing_an_answer_does_not_regenerate():
    log = build_log(("u0", Sender.USER), ("a1", Sender.AI))
    memory = MemoryWindow(6)
    turn = RecordingTurn()

    result = await HistoryReplayController(log, memory, turn).edit_message(log.messages[1].id, "better answer")

    assert result is None
    assert turn.inputs == []
    assert memory.load() == (("u0", "better answer"),)
    assert log.messages[1].sender is Sender.AI


@pytest.mark.asyncio
async def test_unknown_message_leaves_state_untouched():
    log = build_log(*FIVE)
    memory = MemoryWindow(6)
    memory.append("u0", "a1")

    with pytest.raises(MessageNotFound):
        await HistoryReplayController(log, memory, RecordingTurn()).edit_message("missing", "X")

    assert len(log) == 5
    assert len(memory) == 1


@pytest.mark.asyncio
async def test_no_user_message_to_replay():
    log = build_log(("welcome", Sender.AI))

    with pytest.raises(NoUserMessageToReplay):
        await HistoryReplayController(log, MemoryWindow(2), RecordingTurn()).edit_message(
            log.messages[0].id, "edited"
        )


@pytest.mark.asyncio
async def test_edit_refused_while_busy():
    log = build_log(*FIVE)
    controller = HistoryReplayController(log, MemoryWindow(2), RecordingTurn(), is_busy=lambda: True)

    with pytest.raises(ConcurrencyViolation):
        await controller.edit_message(log.messages[0].id, "X")
    assert len(log) == 5


def test_replay_skips_messages_outside_the_chain():
    messages = [
        Message(text="shown", sender=Sender.USER, in_chain=False),
        Message(text="with context", sender=Sender.USER, visible=False),
        Message(text="answer", sender=Sender.AI),
        Message(text="Indexing...", sender=Sender.AI, in_chain=False),
    ]
    memory = MemoryWindow(4)

    pending = replay_into_memory(messages, memory)

    assert pending is None
    assert memory.load() == (("with context", "answer"),)
