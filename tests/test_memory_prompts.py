import pytest

from chat_engine.memory import MemoryWindow
from chat_engine.prompts import (
    ChatPrompt,
    PromptAssembler,
    condense_question_messages,
    qa_messages,
)


def test_memory_window_evicts_oldest_pair():
    memory = MemoryWindow(2)
    memory.append("q1", "a1")
    memory.append("q2", "a2")
    memory.append("q3", "a3")

    assert memory.load() == (("q2", "a2"), ("q3", "a3"))
    assert len(memory) == 2


def test_memory_window_rejects_zero_capacity():
    with pytest.raises(ValueError):
        MemoryWindow(0)


def test_memory_clear_and_messages():
    memory = MemoryWindow(3)
    memory.append("hello", "hi")
    assert memory.as_messages() == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi"},
    ]
    memory.clear()
    assert memory.load() == ()


def test_chat_prompt_places_system_history_and_input_in_order():
    prompt = ChatPrompt("Be brief.")
    messages = prompt.format([("q1", "a1")], "q2")

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0]["content"] == "Be brief."
    assert messages[-1]["content"] == "q2"


def test_empty_system_message_is_left_out():
    assembler = PromptAssembler("")
    messages = assembler.chat_prompt().format((), "hello")

    assert messages == [{"role": "user", "content": "hello"}]
    assert assembler.suppressed().suppressed


def test_override_prompt_replaces_system_message():
    assembler = PromptAssembler("default")
    assert assembler.with_override("custom").system_message == "custom"
    assert assembler.with_override(None).system_message is None


def test_condense_question_includes_history():
    messages = condense_question_messages([("What is X?", "X is a letter.")], "And Y?")

    assert len(messages) == 1
    assert "Human: What is X?" in messages[0]["content"]
    assert "Follow Up Input: And Y?" in messages[0]["content"]


def test_qa_messages_embed_context_chunks():
    messages = qa_messages(ChatPrompt("sys"), ["chunk one", "chunk two"], "question?")

    assert messages[0] == {"role": "system", "content": "sys"}
    assert "chunk one\n\nchunk two" in messages[1]["content"]
    assert messages[1]["content"].endswith("Question: question?\nHelpful Answer:")
